import asyncio

from doya_banner.integrations import headless
from doya_banner.integrations.headless import (
    KIND_ICON,
    KIND_MIXED,
    KIND_PHOTO,
    VisualBrandReport,
    build_visual_report,
    classify_image_kind,
    palette_from_ui_colors,
    weighted_colors,
)
from doya_banner.palette import ColorByArea, TTLCache

SCREENSHOT = [
    ColorByArea("#FFFFFF", 0.6),
    ColorByArea("#1A73E8", 0.2),
    ColorByArea("#1B74E9", 0.1),
    ColorByArea("#FF6600", 0.05),
]
COMPUTED = [
    {"hex": "#E60012", "w": 5000},
    {"hex": "#FFFFFF", "w": 3000},
    {"hex": "#e60012", "w": 1000},
    {"hex": "#222222", "w": 2000},
    {"hex": "bogus", "w": 99999},
]


def test_weighted_colors_merges_and_ranks():
    colors = weighted_colors(COMPUTED)
    assert [c.hex for c in colors] == ["#E60012", "#FFFFFF", "#222222"]
    assert abs(colors[0].ratio - 6000 / 11000) < 1e-9


def test_screenshot_palette_when_not_photo_heavy():
    info = {"imgAreaRatio": 0.1, "bgImgAreaRatio": 0.05, "svgCount": 2, "rasterCount": 3, "imgCount": 3}
    report = build_visual_report(info, COMPUTED, SCREENSHOT, "なし")
    assert report.main_color == "#FFFFFF"
    # #1B74E9 is too close to #1A73E8
    assert report.sub_colors == ["#1A73E8", "#FF6600"]
    assert "#FFFFFF(60%)" in report.color_summary_text
    assert "people=なし" in report.image_summary_text


def test_computed_palette_when_photo_heavy():
    info = {"imgAreaRatio": 0.2, "bgImgAreaRatio": 0.1, "rasterCount": 12, "svgCount": 1}
    report = build_visual_report(info, COMPUTED, SCREENSHOT, "あり")
    assert report.main_color == "#E60012"
    assert report.colors_by_area[0].hex == "#E60012"
    assert f"kind={KIND_PHOTO}" in report.image_summary_text


def test_photo_heavy_needs_two_computed_colors():
    info = {"imgAreaRatio": 0.5, "bgImgAreaRatio": 0.0}
    report = build_visual_report(info, [{"hex": "#E60012", "w": 10}], SCREENSHOT, "不明")
    assert report.main_color == "#FFFFFF"


def test_classify_image_kind():
    assert classify_image_kind(20, 3) == KIND_ICON
    assert classify_image_kind(1, 9) == KIND_PHOTO
    assert classify_image_kind(5, 5) == KIND_MIXED
    assert classify_image_kind(0, 0) == KIND_MIXED


def test_disabled_flag_returns_empty_report(monkeypatch):
    monkeypatch.setenv("DOYA_DISABLE_HEADLESS_COLOR", "1")
    report = asyncio.run(headless.analyze_site_visual("https://acme.jp/"))
    assert report == VisualBrandReport()
    assert asyncio.run(headless.extract_palette_via_headless_computed_styles("https://acme.jp/")) == []


def test_visual_report_served_from_cache(monkeypatch):
    monkeypatch.setenv("DOYA_DISABLE_HEADLESS_COLOR", "0")
    cached = VisualBrandReport(main_color="#1A73E8")
    cache = TTLCache(60)
    cache.set("acme.jp", cached)

    def _no_browser():
        raise AssertionError("browser should not start on a cache hit")

    monkeypatch.setattr(headless, "async_playwright", _no_browser)
    assert asyncio.run(headless.analyze_site_visual("https://acme.jp/page", cache=cache)) is cached


def test_browser_failure_degrades(monkeypatch):
    monkeypatch.setenv("DOYA_DISABLE_HEADLESS_COLOR", "0")

    class _Broken:
        async def __aenter__(self):
            raise RuntimeError("no chromium")

        async def __aexit__(self, *exc):
            return False

    monkeypatch.setattr(headless, "async_playwright", lambda: _Broken())
    cache = TTLCache(60)
    report = asyncio.run(headless.analyze_site_visual("https://acme.jp/", cache=cache))
    assert report.main_color is None
    assert report.colors_by_area == []
    assert len(cache) == 0


UI_SAMPLES = [
    {"hex": "#FFFFFF", "w": 1000},
    {"hex": "#1a73e8", "w": 300},
    {"hex": "#1A73E8", "w": 200},
    {"hex": "#00AA55", "w": 300},
    {"hex": "#E60012", "w": 200},
    {"hex": "#FF6600", "w": 150},
    {"hex": "not-a-color", "w": 9999},
    {"hex": "#12345", "w": 50},
]


def test_palette_from_ui_colors():
    palette = palette_from_ui_colors(UI_SAMPLES)
    assert palette == ["#1A73E8", "#00AA55", "#E60012"]
    assert palette_from_ui_colors([]) == []
    assert palette_from_ui_colors([{"hex": "#ffffff", "w": 10}, {"hex": "#FFFFFF", "w": 5}]) == ["#FFFFFF"]


class _FakePage:
    def __init__(self, raw):
        self.raw = raw

    async def route(self, pattern, handler):
        pass

    async def goto(self, url, wait_until=None, timeout=None):
        pass

    async def evaluate(self, script):
        return self.raw


class _FakeBrowser:
    def __init__(self, raw):
        self.raw = raw
        self.closed = False

    async def new_context(self, viewport=None):
        return self

    async def new_page(self):
        return _FakePage(self.raw)

    async def close(self):
        self.closed = True


class _FakePlaywright:
    def __init__(self, raw):
        self.browser = _FakeBrowser(raw)
        self.chromium = self

    async def launch(self, headless=True):
        return self.browser

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def test_headless_palette_is_capped_and_cached(monkeypatch):
    monkeypatch.setenv("DOYA_DISABLE_HEADLESS_COLOR", "0")
    fake = _FakePlaywright(UI_SAMPLES)
    monkeypatch.setattr(headless, "async_playwright", lambda: fake)
    cache = TTLCache(60)

    palette = asyncio.run(headless.extract_palette_via_headless_computed_styles("https://acme.jp/", cache=cache))
    assert palette == ["#1A73E8", "#00AA55", "#E60012"]
    assert fake.browser.closed
    assert cache.get("acme.jp") == palette


def test_headless_palette_served_from_cache(monkeypatch):
    monkeypatch.setenv("DOYA_DISABLE_HEADLESS_COLOR", "0")
    cache = TTLCache(60)
    cache.set("acme.jp", ["#123456"])

    def _no_browser():
        raise AssertionError("browser should not start on a cache hit")

    monkeypatch.setattr(headless, "async_playwright", _no_browser)
    assert asyncio.run(headless.extract_palette_via_headless_computed_styles("https://acme.jp/x", cache=cache)) == ["#123456"]
