"""Monthly quota gate and per-request count/size clamping.

Guests are tracked in a signed cookie, logged-in users in the
``user_service_subscriptions`` table. The gate runs before any page fetch or
paid API call; usage is charged afterwards from the number of images that
were actually produced.
"""
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from doya_banner import db
from doya_banner.auth import SessionUser, sign_payload, verify_signed
from doya_banner.config import GUEST_UPGRADE_URL, HIGH_USAGE_CONTACT_URL, guest_cookie_secret
from doya_banner.pricing import (
    BANNER_PRICING,
    get_banner_monthly_limit_by_user_plan,
    should_reset_monthly_usage,
)

log = logging.getLogger(__name__)

GUEST_USAGE_COOKIE = "doya_banner_guest_usage"
GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 2

LIMIT_REACHED_CODE = "MONTHLY_LIMIT_REACHED"
GUEST_LIMIT_ERROR = "ゲストは今月分の生成上限を超えています。ログインしてご利用ください。"
USER_LIMIT_ERROR = "今月の生成上限に達しました。"

DEFAULT_SIZE = "1080x1080"
DEFAULT_COUNT = 3
FREE_MAX_COUNT = 3
UNLIMITED_MAX_COUNT = 10
MIN_SIDE = 100
MAX_SIDE = 4096

_SIZE_RE = re.compile(r"^\d{2,4}x\d{2,4}$")


def is_valid_size_string(v) -> bool:
    s = str(v or "").strip()
    if not _SIZE_RE.match(s):
        return False
    w, h = (int(x) for x in s.split("x"))
    return MIN_SIDE <= w <= MAX_SIDE and MIN_SIDE <= h <= MAX_SIDE


def _as_int(v) -> Optional[int]:
    if isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    # inf and nan read as absent
    return int(f) if math.isfinite(f) else None


def resolve_generation_request(requested_count, requested_size, can_use_unlimited: bool) -> Tuple[int, str]:
    """Clamp (count, size) to what the caller's plan allows.

    Free users and guests get 1-3 images at the fixed size; paid or free-hour
    users get 1-10 images and any valid custom size.
    """
    count = _as_int(requested_count) or DEFAULT_COUNT
    if can_use_unlimited:
        count = max(1, min(UNLIMITED_MAX_COUNT, count))
        size = str(requested_size).strip() if is_valid_size_string(requested_size) else DEFAULT_SIZE
    else:
        count = max(1, min(FREE_MAX_COUNT, count))
        size = DEFAULT_SIZE
    return count, size


# ---------------- Guest cookie ----------------
@dataclass
class GuestUsage:
    date: str  # YYYY-MM
    count: int = 0

    def to_dict(self) -> dict:
        return {"date": self.date, "count": self.count}


def parse_guest_usage(data, current_month: str) -> GuestUsage:
    if not isinstance(data, dict):
        return GuestUsage(date=current_month, count=0)
    date = data.get("date") if isinstance(data.get("date"), str) else current_month
    count = data.get("count")
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        count = 0
    # older cookies stored YYYY-MM-DD
    if date[:7] != current_month:
        return GuestUsage(date=current_month, count=0)
    return GuestUsage(date=current_month, count=max(0, int(count)))


def encode_guest_cookie(usage: GuestUsage) -> str:
    return sign_payload(usage.to_dict(), guest_cookie_secret())


def read_guest_usage(cookie_value: str | None, current_month: str) -> GuestUsage:
    """Signed cookie -> usage; a missing or tampered cookie starts a fresh month."""
    payload = verify_signed(cookie_value or "", guest_cookie_secret()) if cookie_value else None
    return parse_guest_usage(payload, current_month)


# ---------------- Gate ----------------
def exceeds_quota(limit: int, used: int, desired: int) -> bool:
    return limit != -1 and used + desired > limit


@dataclass
class UsageInfo:
    monthly_limit: int
    monthly_used: int

    @property
    def monthly_remaining(self) -> int:
        if self.monthly_limit == -1:
            return -1
        return max(0, self.monthly_limit - self.monthly_used)

    def to_dict(self) -> dict:
        return {
            "monthlyLimit": self.monthly_limit,
            "monthlyUsed": self.monthly_used,
            "monthlyRemaining": self.monthly_remaining,
        }


@dataclass
class GateResult:
    allowed: bool
    usage: Optional[UsageInfo] = None
    error: Optional[dict] = None
    guest_usage: Optional[GuestUsage] = None


def _limit_error(message: str, usage: UsageInfo, upgrade_url: str) -> dict:
    return {
        "error": message,
        "code": LIMIT_REACHED_CODE,
        "usage": usage.to_dict(),
        "upgradeUrl": upgrade_url,
    }


def check_guest_quota(cookie_value: str | None, desired: int, current_month: str) -> GateResult:
    guest = read_guest_usage(cookie_value, current_month)
    usage = UsageInfo(monthly_limit=BANNER_PRICING["guestLimit"], monthly_used=guest.count)
    if exceeds_quota(usage.monthly_limit, usage.monthly_used, desired):
        return GateResult(
            allowed=False,
            usage=usage,
            error=_limit_error(GUEST_LIMIT_ERROR, usage, GUEST_UPGRADE_URL),
            guest_usage=guest,
        )
    return GateResult(allowed=True, usage=usage, guest_usage=guest)


def check_user_quota(
    user: SessionUser,
    desired: int,
    free_hour_active: bool,
    now: Optional[datetime] = None,
) -> GateResult:
    """Plan-based monthly check for a logged-in user.

    Skipped entirely during the free hour and for unlimited plans. A counter
    last reset in an earlier JST month counts as zero; the DB reset is
    best-effort.
    """
    if free_hour_active:
        return GateResult(allowed=True)
    limit = get_banner_monthly_limit_by_user_plan(user.plan)
    if limit == -1:
        return GateResult(allowed=True)

    sub = db.get_service_subscription(user.user_id)
    used = int(sub["monthly_usage"]) if sub else 0
    if should_reset_monthly_usage(sub["last_usage_reset"] if sub else None, now):
        used = 0
        if sub:
            try:
                db.reset_monthly_usage(user.user_id)
            except SQLAlchemyError as e:
                log.warning("monthly usage reset failed for %s: %s", user.user_id, e)

    usage = UsageInfo(monthly_limit=limit, monthly_used=used)
    if exceeds_quota(limit, used, desired):
        upgrade_url = "/banner" if user.plan == "FREE" else (HIGH_USAGE_CONTACT_URL or "/banner")
        return GateResult(allowed=False, usage=usage, error=_limit_error(USER_LIMIT_ERROR, usage, upgrade_url))
    return GateResult(allowed=True, usage=usage)


def record_usage(
    gate: GateResult,
    charged: int,
    *,
    user: SessionUser | None = None,
    current_month: str,
) -> Optional[GuestUsage]:
    """Charge ``charged`` images after a successful generation.

    Returns the updated guest usage to write back as a cookie, or None for
    logged-in users (their counter is incremented in the database).
    """
    if user is None:
        prev = gate.guest_usage or GuestUsage(date=current_month, count=0)
        guest = GuestUsage(
            date=current_month,
            count=(prev.count + charged) if prev.date == current_month else charged,
        )
        if gate.usage is not None:
            gate.usage = UsageInfo(monthly_limit=gate.usage.monthly_limit, monthly_used=guest.count)
        return guest

    try:
        new_total = db.increment_monthly_usage(user.user_id, charged)
        if gate.usage is not None:
            gate.usage = UsageInfo(monthly_limit=gate.usage.monthly_limit, monthly_used=new_total)
    except SQLAlchemyError as e:
        log.error("usage increment failed for %s: %s", user.user_id, e)
    return None
