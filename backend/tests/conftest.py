import os

# Must be set before doya_banner.config / doya_banner.db are imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DOYA_DISABLE_HEADLESS_COLOR"] = "1"
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

import pytest

from doya_banner import db

_KEY_VARS = (
    "GOOGLE_GENAI_API_KEY",
    "GOOGLE_AI_API_KEY",
    "GEMINI_API_KEY",
    "NANOBANNER_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_CLOUD_VISION_API_KEY",
    "GOOGLE_VISION_API_KEY",
    "GCP_VISION_API_KEY",
    "VISION_API_KEY",
    "DOYA_DISABLE_LIMITS",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in _KEY_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def clean_db():
    with db.SessionLocal() as session:
        session.query(db.Generation).delete()
        session.query(db.UserServiceSubscription).delete()
        session.commit()
    yield db
