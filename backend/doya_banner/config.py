import os

SERVICE_ID = "banner"

DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
# SQLite fallback location when DATABASE_URL is not set
DATA_DIR = os.getenv("DATA_DIR", "./data")

# HMAC keys for the session token and the guest usage cookie.
SESSION_SECRET = os.getenv("SESSION_SECRET", "")
GUEST_COOKIE_SECRET = os.getenv("GUEST_COOKIE_SECRET", "")

# Where heavy users are sent when they run out of monthly quota
HIGH_USAGE_CONTACT_URL = os.getenv("HIGH_USAGE_CONTACT_URL", "/banner")
GUEST_UPGRADE_URL = os.getenv("GUEST_UPGRADE_URL", "/auth/doyamarke/signin?callbackUrl=%2Fbanner")

# Comma-separated, tried in order.
GEMINI_JSON_MODELS = [
    m.strip()
    for m in os.getenv("GEMINI_JSON_MODELS", "gemini-3-pro-preview,gemini-3-flash-preview").split(",")
    if m.strip()
]
BANNER_IMAGE_MODELS = [
    m.strip()
    for m in os.getenv("BANNER_IMAGE_MODELS", "gemini-3-pro-image-preview,gemini-2.5-flash-image-preview").split(",")
    if m.strip()
]

CORS_ALLOW_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]

USER_AGENT = os.getenv(
    "FETCH_USER_AGENT",
    "Mozilla/5.0 (compatible; DoyaBannerAI/1.0; +https://doya-ai.vercel.app)",
)


def _first_env(*names: str) -> str | None:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            return v
    return None


def get_genai_api_key() -> str | None:
    return _first_env(
        "GOOGLE_GENAI_API_KEY",
        "GOOGLE_AI_API_KEY",
        "GEMINI_API_KEY",
        "NANOBANNER_API_KEY",
        "GOOGLE_API_KEY",
    )


def get_vision_api_key() -> str | None:
    return _first_env(
        "GOOGLE_CLOUD_VISION_API_KEY",
        "GOOGLE_VISION_API_KEY",
        "GCP_VISION_API_KEY",
        "VISION_API_KEY",
    )


# Flags are read at call time so operators (and tests) can flip them without a restart.
def limits_disabled() -> bool:
    return os.getenv("DOYA_DISABLE_LIMITS", "") == "1"


def headless_color_disabled() -> bool:
    return os.getenv("DOYA_DISABLE_HEADLESS_COLOR", "") == "1"


def is_production() -> bool:
    env = (os.getenv("APP_ENV") or os.getenv("ENV") or "").strip().lower()
    return env == "production"


def session_secret() -> bytes:
    sec = (os.getenv("SESSION_SECRET", "") or SESSION_SECRET or "").strip()
    if not sec:
        # Dev-only fallback; production should set SESSION_SECRET
        sec = "dev-secret"
    return sec.encode("utf-8")


def guest_cookie_secret() -> bytes:
    sec = (os.getenv("GUEST_COOKIE_SECRET", "") or GUEST_COOKIE_SECRET or "").strip()
    if not sec:
        return session_secret()
    return sec.encode("utf-8")
