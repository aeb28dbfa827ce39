import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from doya_banner.config import session_secret

SESSION_COOKIE = "doya_session"


def _b64u_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64u_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s or "") + pad)


def sign_payload(payload: dict, secret: bytes) -> str:
    msg = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    body = _b64u_encode(msg)
    sig = _b64u_encode(hmac.new(secret, body.encode("ascii"), hashlib.sha256).digest())
    return f"{body}.{sig}"


def verify_signed(token: str, secret: bytes) -> dict | None:
    """Payload of a ``body.sig`` token, or None when malformed, tampered or expired."""
    try:
        tok = (token or "").strip()
        if not tok or "." not in tok:
            return None
        body, sig = tok.split(".", 1)
        exp_sig = _b64u_encode(hmac.new(secret, body.encode("ascii"), hashlib.sha256).digest())
        if not hmac.compare_digest(exp_sig, sig):
            return None
        payload = json.loads(_b64u_decode(body).decode("utf-8"))
        if not isinstance(payload, dict):
            return None
        # exp check (unix seconds)
        exp = int(payload.get("exp") or 0)
        if exp and int(time.time()) > exp:
            return None
        return payload
    except (ValueError, TypeError, UnicodeError):
        return None


@dataclass
class SessionUser:
    user_id: str
    plan: str = "FREE"
    first_login_at: Optional[str] = None


def issue_session_token(
    user_id: str,
    *,
    plan: str = "FREE",
    banner_plan: str | None = None,
    first_login_at: str | None = None,
    ttl_seconds: int | None = None,
) -> str:
    now = int(time.time())
    payload = {"sub": user_id, "plan": plan, "iat": now}
    if banner_plan:
        payload["banner_plan"] = banner_plan
    if first_login_at:
        payload["first_login_at"] = first_login_at
    if ttl_seconds:
        payload["exp"] = now + int(ttl_seconds)
    return sign_payload(payload, session_secret())


def verify_session_token(token: str) -> SessionUser | None:
    payload = verify_signed(token, session_secret())
    if not payload or not str(payload.get("sub") or "").strip():
        return None
    # banner-specific plan wins over the account plan
    plan = str(payload.get("banner_plan") or payload.get("plan") or "FREE").upper()
    return SessionUser(
        user_id=str(payload["sub"]),
        plan=plan,
        first_login_at=payload.get("first_login_at") or None,
    )


def get_session_user(req: Request) -> SessionUser | None:
    auth = (req.headers.get("authorization") or "").strip()
    token = ""
    if auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
    if not token:
        token = (req.cookies.get(SESSION_COOKIE) or "").strip()
    if not token:
        return None
    return verify_session_token(token)
