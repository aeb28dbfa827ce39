import base64

import pytest
from sqlalchemy.exc import SQLAlchemyError
from fastapi.testclient import TestClient

from doya_banner import main, pipeline
from doya_banner.auth import issue_session_token
from doya_banner.integrations.gemini_client import BannerGenerationResult, GeminiJsonError
from doya_banner.integrations.site_client import SiteFetchError
from doya_banner.usage import GUEST_USAGE_COOKIE, GuestUsage, encode_guest_cookie, read_guest_usage
from doya_banner.pricing import get_current_month_jst

ACME_HTML = """<html><head>
<meta property="og:title" content="Acme SaaS">
<meta name="theme-color" content="#1A73E8">
</head><body><h1>Acme SaaS</h1><p>資料請求はこちら</p></body></html>"""

IMG = "data:image/png;base64," + base64.b64encode(b"banner").decode()


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def fake_pipeline(monkeypatch):
    """Configured service with every network call replaced; records generation calls."""
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    calls = {"fetch": [], "generate": []}

    def fake_fetch(url, timeout=12):
        calls["fetch"].append(url)
        return 200, ACME_HTML

    def fake_llm(prompt, api_key, models=None):
        return {
            "banner_analysis": "要約\nCTA：資料をダウンロード、今すぐ\nトーン：誠実",
            "image_generation_prompt": "A clean SaaS banner",
            "negative_prompt": "clutter",
        }

    def fake_generate(category, keyword, size, options, count):
        calls["generate"].append({"category": category, "keyword": keyword, "size": size, "options": options, "count": count})
        return BannerGenerationResult(banners=[IMG] * count, used_model="gemini-3-pro-image-preview")

    monkeypatch.setattr(main, "fetch_html", fake_fetch)
    monkeypatch.setattr(main, "call_gemini_for_json", fake_llm)
    monkeypatch.setattr(main, "generate_banners", fake_generate)
    monkeypatch.setattr(pipeline, "extract_palette_from_images", lambda urls: [])
    monkeypatch.setattr(pipeline, "fetch_image_as_reference_data_url", lambda url: None)
    return calls


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_invalid_url(client, fake_pipeline):
    res = client.post("/api/banner/from-url", json={"target_url": "ftp://acme.jp"})
    assert res.status_code == 400
    assert res.json()["error"].startswith("URLが不正です")
    assert fake_pipeline["fetch"] == []


def test_not_configured(client):
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme.jp"})
    assert res.status_code == 503


def test_guest_generation(client, fake_pipeline):
    res = client.post("/api/banner/from-url", json={"targetUrl": "https://acme-saas.jp/", "count": 2, "size": "1920x1080"})
    assert res.status_code == 200
    body = res.json()
    assert body["banners"] == [IMG, IMG]
    assert body["imagePrompt"] == "A clean SaaS banner"
    assert body["negativePrompt"] == "clutter"
    assert body["analysisJson"]["cta"] == "資料をダウンロード"
    assert body["analysisJson"]["tone"] == "誠実"
    assert body["usedModelDisplay"] == "Nano Banana Pro"
    assert body["usage"] == {"monthlyLimit": 3, "monthlyUsed": 2, "monthlyRemaining": 1}
    assert "warning" not in body

    gen = fake_pipeline["generate"][0]
    # guests are pinned to the default size
    assert gen["size"] == "1080x1080"
    assert gen["count"] == 2
    assert gen["keyword"] == "Acme SaaS"
    assert gen["category"] == "other"
    assert gen["options"]["brandColors"] == ["#1A73E8"]
    assert gen["options"]["purpose"] == "sns_ad"

    cookie = res.cookies.get(GUEST_USAGE_COOKIE)
    assert read_guest_usage(cookie, get_current_month_jst()).count == 2


def test_guest_quota_rejected_before_fetch(client, fake_pipeline):
    client.cookies.set(GUEST_USAGE_COOKIE, encode_guest_cookie(GuestUsage(get_current_month_jst(), 3)))
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/", "count": 1})
    assert res.status_code == 429
    body = res.json()
    assert body["code"] == "MONTHLY_LIMIT_REACHED"
    assert body["usage"]["monthlyRemaining"] == 0
    assert fake_pipeline["fetch"] == []


def test_limits_disabled_sets_no_cookie(client, fake_pipeline, monkeypatch):
    monkeypatch.setenv("DOYA_DISABLE_LIMITS", "1")
    client.cookies.set(GUEST_USAGE_COOKIE, encode_guest_cookie(GuestUsage(get_current_month_jst(), 3)))
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 200
    assert GUEST_USAGE_COOKIE not in res.cookies
    assert "usage" not in res.json()


def test_page_status_error(client, fake_pipeline, monkeypatch):
    monkeypatch.setattr(main, "fetch_html", lambda url, timeout=12: (404, "nope"))
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 400
    assert res.json()["error"] == "URLの取得に失敗しました（status=404）"


def test_page_timeout(client, fake_pipeline, monkeypatch):
    def boom(url, timeout=12):
        raise SiteFetchError("timeout")

    monkeypatch.setattr(main, "fetch_html", boom)
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 400
    assert res.json()["error"] == "URLの取得に失敗しました（timeout）"


def test_llm_failure_is_500(client, fake_pipeline, monkeypatch):
    def fail(prompt, api_key, models=None):
        raise GeminiJsonError("Gemini gemini-3-flash-preview error: 500 - boom")

    monkeypatch.setattr(main, "call_gemini_for_json", fail)
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 500
    assert "boom" in res.json()["error"]
    assert fake_pipeline["generate"] == []


def test_empty_image_prompt_is_500(client, fake_pipeline, monkeypatch):
    monkeypatch.setattr(main, "call_gemini_for_json", lambda prompt, api_key, models=None: {"banner_analysis": "x"})
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 500
    assert res.json()["error"] == main.EMPTY_PROMPT_ERROR


def test_unexpected_error_is_generic(client, fake_pipeline, monkeypatch):
    def explode(*args, **kwargs):
        raise KeyError("internal detail")

    monkeypatch.setattr(main, "generate_banners", explode)
    res = client.post("/api/banner/from-url", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 500
    assert res.json() == {"error": main.GENERIC_ERROR}


def test_paid_user_generation_records_history(client, fake_pipeline, clean_db):
    db = clean_db
    db.upsert_service_subscription("pro-user", plan="PRO")
    token = issue_session_token("pro-user", plan="PRO")
    res = client.post(
        "/api/banner/from-url",
        json={"target_url": "https://acme-saas.jp/", "count": 5, "size": "1920x1080", "shareToGallery": True},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 200
    assert res.json()["usage"] == {"monthlyLimit": 150, "monthlyUsed": 5, "monthlyRemaining": 145}
    assert GUEST_USAGE_COOKIE not in res.cookies

    gen = fake_pipeline["generate"][0]
    assert gen["size"] == "1920x1080"
    assert gen["count"] == 5

    rows = db.list_generations("pro-user")
    assert len(rows) == 5
    patterns = sorted(r["metadata"]["pattern"] for r in rows)
    assert patterns == ["A", "B", "C", "D", "E"]
    assert rows[0]["input"]["source"] == "url"
    assert rows[0]["metadata"]["shared"] is True
    assert "sharedAt" in rows[0]["metadata"]
    assert len({r["metadata"]["batchId"] for r in rows}) == 1
    assert db.get_service_subscription("pro-user")["monthly_usage"] == 5


def test_free_user_over_limit(client, fake_pipeline, clean_db):
    db = clean_db
    db.upsert_service_subscription("free-user", plan="FREE")
    db.increment_monthly_usage("free-user", 15)
    token = issue_session_token("free-user")
    res = client.post(
        "/api/banner/from-url",
        json={"target_url": "https://acme-saas.jp/"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 429
    assert res.json()["upgradeUrl"] == "/banner"
    assert res.json()["error"] == "今月の生成上限に達しました。"


def test_palette_preview(client, fake_pipeline):
    res = client.post("/api/banner/palette", json={"target_url": "https://acme-saas.jp/"})
    assert res.status_code == 200
    body = res.json()
    assert body["palette"] == ["#1A73E8"]
    assert body["cssPalette"] == ["#1A73E8"]
    assert body["hints"].startswith("theme-color=#1A73E8")
    assert fake_pipeline["generate"] == []


def test_usage_endpoint_guest(client):
    client.cookies.set(GUEST_USAGE_COOKIE, encode_guest_cookie(GuestUsage(get_current_month_jst(), 1)))
    body = client.get("/api/banner/usage").json()
    assert body["plan"] == "GUEST"
    assert body["usage"] == {"monthlyLimit": 3, "monthlyUsed": 1, "monthlyRemaining": 2}


def test_usage_endpoint_free_hour(client, clean_db):
    from datetime import datetime, timezone

    token = issue_session_token("fresh-user", first_login_at=datetime.now(timezone.utc).isoformat())
    body = client.get("/api/banner/usage", headers={"Authorization": f"Bearer {token}"}).json()
    assert body["plan"] == "FREE"
    assert body["freeHourActive"] is True
    assert 0 < body["freeHourRemainingSeconds"] <= 3600
    assert body["usage"]["monthlyUsed"] == 0


def test_infinite_count_falls_back_to_default(client, fake_pipeline):
    res = client.post(
        "/api/banner/from-url",
        content='{"target_url": "https://acme-saas.jp/", "count": 1e999}',
        headers={"Content-Type": "application/json"},
    )
    assert res.status_code == 200
    assert fake_pipeline["generate"][0]["count"] == 3


def test_non_string_url_is_400(client, fake_pipeline):
    res = client.post("/api/banner/from-url", json={"target_url": 12345})
    assert res.status_code == 400
    assert res.json() == {"error": main.INVALID_URL_ERROR}
    assert fake_pipeline["fetch"] == []


def test_body_that_is_not_an_object_is_400(client, fake_pipeline):
    res = client.post("/api/banner/from-url", json=["https://acme-saas.jp/"])
    assert res.status_code == 400
    assert res.json() == {"error": main.INVALID_URL_ERROR}


def test_wrongly_typed_optional_fields_are_ignored(client, fake_pipeline):
    res = client.post(
        "/api/banner/from-url",
        json={
            "target_url": "https://acme-saas.jp/",
            "person_images": "data:image/png;base64,AAA",
            "brandColors": "#FF0000",
            "main_color": 7,
            "logoImage": ["x"],
        },
    )
    assert res.status_code == 200
    opts = fake_pipeline["generate"][0]["options"]
    assert opts["personImages"] is None
    assert opts["logoImage"] is None
    # falls back to colors read from the site
    assert opts["brandColors"] == ["#1A73E8"]


def test_quota_lookup_db_error_is_json_500(client, fake_pipeline, clean_db, monkeypatch):
    def down(*args, **kwargs):
        raise SQLAlchemyError("database is down")

    monkeypatch.setattr(clean_db, "get_service_subscription", down)
    token = issue_session_token("free-user")
    res = client.post(
        "/api/banner/from-url",
        json={"target_url": "https://acme-saas.jp/"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 500
    assert res.json() == {"error": main.GENERIC_ERROR}
    assert fake_pipeline["fetch"] == []


def _history_row(batch_id, pattern, keyword="Acme SaaS"):
    meta = {"pattern": pattern, "keyword": keyword, "size": "1080x1080"}
    if batch_id:
        meta["batchId"] = batch_id
    return {
        "input": {"category": "other", "keyword": keyword, "size": "1080x1080", "purpose": "sns_ad"},
        "output": IMG,
        "output_type": "IMAGE",
        "metadata": meta,
    }


def test_history_requires_login(client):
    res = client.get("/api/banner/history")
    assert res.status_code == 401
    assert res.json() == {"error": "unauthorized"}


def test_history_locked_for_free_plan(client, clean_db):
    clean_db.create_generations("free-user", [_history_row("b1", "A")])
    token = issue_session_token("free-user")
    body = client.get("/api/banner/history", headers={"Authorization": f"Bearer {token}"}).json()
    assert body["items"] == []
    assert body["requiresUpgrade"] is True


def test_history_groups_batches(client, clean_db):
    db = clean_db
    db.upsert_service_subscription("pro-user", plan="PRO")
    db.create_generations("pro-user", [_history_row("b1", "A"), _history_row("b1", "B")])
    db.create_generations("pro-user", [_history_row("b2", "A")])
    db.create_generations("pro-user", [_history_row(None, "A", keyword="old")])
    db.create_generations("someone-else", [_history_row("b9", "A")])
    # the DB plan unlocks history even when the session says FREE
    token = issue_session_token("pro-user")
    headers = {"Authorization": f"Bearer {token}"}

    items = client.get("/api/banner/history", headers=headers).json()["items"]
    by_id = {item["id"]: item for item in items}
    assert len(items) == 3
    assert by_id["b1"]["bannerCount"] == 2
    assert by_id["b1"]["banners"] == [IMG, IMG]
    assert by_id["b2"]["keyword"] == "Acme SaaS"
    legacy = [i for i in items if i["id"] not in ("b1", "b2")][0]
    assert legacy["id"].endswith("|old|1080x1080")

    light = client.get("/api/banner/history?images=0&take=1", headers=headers).json()["items"]
    assert len(light) == 1
    assert light[0]["banners"] == []
    assert light[0]["bannerCount"] >= 1


def test_history_db_error(client, clean_db, monkeypatch):
    def down(*args, **kwargs):
        raise SQLAlchemyError("database is down")

    monkeypatch.setattr(clean_db, "list_generations", down)
    token = issue_session_token("pro-user", plan="PRO")
    res = client.get("/api/banner/history", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 500
    assert res.json() == {"error": main.HISTORY_ERROR}


def test_usage_endpoint_db_error(client, clean_db, monkeypatch):
    def down(*args, **kwargs):
        raise SQLAlchemyError("database is down")

    monkeypatch.setattr(clean_db, "get_service_subscription", down)
    token = issue_session_token("free-user")
    res = client.get("/api/banner/usage", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 500
    assert "error" in res.json()
