import pytest
import requests

from doya_banner.integrations import site_client, vision_client
from doya_banner.integrations.site_client import SiteFetchError, fetch_bytes, fetch_html
from doya_banner.integrations.vision_client import detect_people


class FakeResponse:
    def __init__(self, status_code=200, text="", payload=None, content=b"", headers=None):
        self.status_code = status_code
        self.text = text
        self._payload = payload
        self.content = content
        self.headers = headers or {}
        self.encoding = "utf-8"

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._payload


def test_fetch_html_returns_status_and_body(monkeypatch):
    seen = {}

    def fake_get(url, headers=None, timeout=None, allow_redirects=None):
        seen.update(url=url, headers=headers, timeout=timeout)
        return FakeResponse(404, text="missing")

    monkeypatch.setattr(site_client.requests, "get", fake_get)
    assert fetch_html("https://acme.jp/") == (404, "missing")
    assert seen["timeout"] == 12
    assert seen["headers"]["Accept"] == "text/html,application/xhtml+xml"


def test_fetch_html_timeout(monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr(site_client.requests, "get", fake_get)
    with pytest.raises(SiteFetchError, match="timeout"):
        fetch_html("https://acme.jp/")


def test_fetch_bytes_failures_are_none(monkeypatch):
    monkeypatch.setattr(site_client.requests, "get", lambda *a, **k: FakeResponse(500))
    assert fetch_bytes("https://acme.jp/a.png") is None

    def boom(*a, **k):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(site_client.requests, "get", boom)
    assert fetch_bytes("https://acme.jp/a.png") is None


def test_detect_people(monkeypatch):
    bodies = []

    def fake_post(url, params=None, json=None, timeout=None):
        bodies.append(json)
        return FakeResponse(payload={"responses": [{}, {"faceAnnotations": [{"joy": "LIKELY"}]}]})

    monkeypatch.setattr(vision_client.requests, "post", fake_post)
    urls = ["https://acme.jp/1.jpg", "https://acme.jp/1.jpg", "https://acme.jp/2.jpg", "https://acme.jp/3.jpg", "https://acme.jp/4.jpg"]
    assert detect_people(urls, "key") == "あり"
    assert len(bodies[0]["requests"]) == 3


def test_detect_people_without_faces_or_key(monkeypatch):
    monkeypatch.setattr(vision_client.requests, "post", lambda *a, **k: FakeResponse(payload={"responses": [{}]}))
    assert detect_people(["https://acme.jp/1.jpg"], "key") == "なし"
    assert detect_people(["https://acme.jp/1.jpg"], None) == "不明"
    assert detect_people([], "key") == "不明"
    monkeypatch.setattr(vision_client.requests, "post", lambda *a, **k: FakeResponse(status_code=403))
    assert detect_people(["https://acme.jp/1.jpg"], "key") == "不明"
