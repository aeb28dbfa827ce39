from datetime import datetime, timedelta, timezone
from typing import Optional

JST = timezone(timedelta(hours=9))

FREE_HOUR = timedelta(hours=1)

# Monthly banner limits per plan; -1 means unlimited.
BANNER_PRICING = {
    "guestLimit": 3,
    "freeLimit": 15,
    "proLimit": 150,
    "enterpriseLimit": 1000,
    # days of history visible; 0 means the feature is locked
    "historyDaysFree": 0,
    "historyDaysPro": 180,
}


def _aware(dt: datetime) -> datetime:
    # Naive timestamps come from the database and are stored in UTC
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _now(now: Optional[datetime] = None) -> datetime:
    return _aware(now) if now is not None else datetime.now(timezone.utc)


def get_current_month_jst(now: Optional[datetime] = None) -> str:
    return _now(now).astimezone(JST).strftime("%Y-%m")


def should_reset_monthly_usage(last_reset: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when ``last_reset`` falls in an earlier JST calendar month than ``now``."""
    if last_reset is None:
        return True
    return _aware(last_reset).astimezone(JST).strftime("%Y-%m") != get_current_month_jst(now)


def parse_iso_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _aware(value)
    if not value:
        return None
    try:
        return _aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def is_within_free_hour(first_login_at, now: Optional[datetime] = None) -> bool:
    start = parse_iso_datetime(first_login_at)
    if start is None:
        return False
    n = _now(now)
    return start <= n < start + FREE_HOUR


def get_free_hour_remaining(first_login_at, now: Optional[datetime] = None) -> int:
    """Seconds left in the post-signup free hour (0 when outside it)."""
    start = parse_iso_datetime(first_login_at)
    if start is None:
        return 0
    left = (start + FREE_HOUR) - _now(now)
    return max(0, int(left.total_seconds()))


def get_banner_monthly_limit_by_user_plan(plan: Optional[str]) -> int:
    p = str(plan or "").strip().upper()
    if p == "GUEST":
        return BANNER_PRICING["guestLimit"]
    if p == "PRO":
        return BANNER_PRICING["proLimit"]
    if p == "ENTERPRISE":
        return BANNER_PRICING["enterpriseLimit"]
    if p == "UNLIMITED":
        return -1
    return BANNER_PRICING["freeLimit"]


def get_banner_history_days(is_pro: bool) -> int:
    return BANNER_PRICING["historyDaysPro"] if is_pro else BANNER_PRICING["historyDaysFree"]
