"""Headless-browser visual analysis of a landing page.

A Chromium page is rendered with Playwright so colors reflect the final CSS and
layout. Two color signals are gathered: a screenshot histogram (area based)
and computed styles of key UI elements (area weighted). Photo-heavy pages use
the latter because photos dominate their screenshots.

Every public coroutine here fails soft: any error yields an empty result.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from playwright.async_api import async_playwright

from doya_banner.colors import colorful_first, is_hex6, select_sub_colors
from doya_banner.config import get_vision_api_key, headless_color_disabled
from doya_banner.integrations.vision_client import PEOPLE_UNKNOWN, detect_people
from doya_banner.palette import ColorByArea, TTLCache, colors_by_area_from_screenshot

log = logging.getLogger(__name__)

VIEWPORT = {"width": 1200, "height": 800}
SETTLE_MS = 900
# Foreground img + background-image share of the viewport above which the
# screenshot is considered photo dominated. Empirical; tune freely.
PHOTO_HEAVY_THRESHOLD = 0.28
# svg vs raster counts must differ by at least this to call a page one kind
IMAGE_KIND_MARGIN = 6

KIND_ICON = "アイコン/イラスト（SVG中心）"
KIND_PHOTO = "写真/実写（ラスタ画像中心）"
KIND_MIXED = "混在（写真+アイコン/イラスト）"


@dataclass
class VisualBrandReport:
    viewport: Dict[str, int] = field(default_factory=lambda: dict(VIEWPORT))
    colors_by_area: List[ColorByArea] = field(default_factory=list)
    main_color: Optional[str] = None
    sub_colors: List[str] = field(default_factory=list)
    color_summary_text: str = ""
    image_summary_text: str = ""
    image_area_ratio: Optional[float] = None
    bg_image_area_ratio: Optional[float] = None
    people: str = PEOPLE_UNKNOWN


# In-page helpers shared by both evaluate scripts. Colors are normalized by
# assigning them to a canvas fillStyle and reading the canonical value back.
_TO_HEX_JS = r"""
const toHex = (input) => {
  const raw = String(input || '').trim();
  if (!raw) return null;
  const canvas = document.createElement('canvas');
  const ctx = canvas.getContext('2d');
  if (!ctx) return null;
  ctx.fillStyle = '#000000';
  const before = String(ctx.fillStyle || '').toLowerCase();
  ctx.fillStyle = raw;
  const normalized = String(ctx.fillStyle || '').toLowerCase();
  if (!normalized || normalized === before) return null;
  const hex = (normalized.match(/#[0-9a-f]{6}\b/) || [])[0];
  if (hex) return hex.toUpperCase();
  const m = normalized.replace(/\s+/g, '').match(/^rgba?\((\d+),(\d+),(\d+)(?:,([\d.]+))?\)$/);
  if (m) {
    const a = m[4] == null ? 1 : Number(m[4]);
    if (a <= 0.08) return null;
    const to = (n) => Math.max(0, Math.min(255, Math.round(Number(n)))).toString(16).padStart(2, '0');
    return ('#' + to(m[1]) + to(m[2]) + to(m[3])).toUpperCase();
  }
  return null;
};
const TRANSPARENT = (v) => !v || v === 'rgba(0, 0, 0, 0)' || v === 'transparent';
const UI_SELECTORS = ['header','nav','main','footer','a','button','[role="button"]',
  '[class*="btn"]','[class*="Button"]','[class*="button"]','[class*="cta"]','[class*="CTA"]'];
"""

_PAGE_INFO_JS = r"""
() => {
  const w = window.innerWidth;
  const h = window.innerHeight;
  const viewportArea = Math.max(1, w * h);
  const clip = (r) => {
    const iw = Math.max(0, Math.min(w, r.right) - Math.max(0, r.left));
    const ih = Math.max(0, Math.min(h, r.bottom) - Math.max(0, r.top));
    return iw > 0 && ih > 0 ? iw * ih : 0;
  };

  const imgs = Array.from(document.images || []);
  const srcOf = (im) => im.currentSrc || im.src || '';
  const imgSrcs = imgs.map(srcOf).filter(Boolean);
  const svgCount = document.querySelectorAll('svg').length + imgSrcs.filter((u) => u.toLowerCase().includes('.svg')).length;
  const rasterCount = imgSrcs.filter((u) => !u.toLowerCase().includes('.svg')).length;

  let imgArea = 0;
  for (const im of imgs) imgArea += clip(im.getBoundingClientRect());

  let bgImgArea = 0;
  const nodes = Array.from(document.querySelectorAll('header,main,section,div,nav,footer')).slice(0, 220);
  for (const el of nodes) {
    const bg = getComputedStyle(el).backgroundImage;
    if (!bg || bg === 'none') continue;
    bgImgArea += clip(el.getBoundingClientRect());
  }

  const iconLinks = document.querySelectorAll('link[rel~="icon"],link[rel="apple-touch-icon"],link[rel="shortcut icon"]');
  const imgCandidates = imgs
    .map((im) => {
      const r = im.getBoundingClientRect();
      return { src: srcOf(im), area: Math.max(0, r.width) * Math.max(0, r.height) };
    })
    .filter((x) => x.src && x.area > 6000)
    .sort((a, b) => b.area - a.area)
    .slice(0, 6)
    .map((x) => x.src);

  return {
    viewport: { width: w, height: h },
    svgCount,
    rasterCount,
    imgCount: imgs.length,
    iconCount: iconLinks.length,
    imgAreaRatio: Math.min(1, imgArea / viewportArea),
    bgImgAreaRatio: Math.min(1, bgImgArea / viewportArea),
    imgCandidates,
  };
}
"""

_COMPUTED_COLORS_JS = "() => {" + _TO_HEX_JS + r"""
  const out = [];
  const push = (value, w) => {
    const hex = toHex(value);
    if (hex) out.push({ hex, w });
  };
  try {
    const body = document.body;
    if (body) {
      const cs = getComputedStyle(body);
      if (cs.backgroundColor) push(cs.backgroundColor, 3.5);
      if (cs.color) push(cs.color, 1.0);
    }
  } catch (e) {}

  const els = Array.from(document.querySelectorAll(UI_SELECTORS.join(','))).slice(0, 220);
  for (const el of els) {
    const r = el.getBoundingClientRect();
    const area = Math.max(0, r.width) * Math.max(0, r.height);
    if (area < 1200) continue;
    const cs = getComputedStyle(el);
    if (!TRANSPARENT(cs.backgroundColor)) push(cs.backgroundColor, Math.min(6, area / 25000));
    if (!TRANSPARENT(cs.borderColor)) push(cs.borderColor, Math.min(2, area / 60000));
    if (cs.color) push(cs.color, Math.min(2, area / 60000));
  }
  return out;
}
"""

_UI_PALETTE_JS = "() => {" + _TO_HEX_JS + r"""
  const out = [];
  const push = (value, w) => {
    const hex = toHex(value);
    if (hex) out.push({ hex, w });
  };
  const theme = document.querySelector('meta[name="theme-color"]');
  if (theme && theme.content) push(theme.content, 3.0);
  try {
    const root = getComputedStyle(document.documentElement);
    const keys = ['--primary','--primary-color','--main','--main-color','--brand','--brand-color',
      '--accent','--accent-color','--secondary','--secondary-color','--link','--link-color',
      '--cta','--cta-color','--button','--button-color'];
    for (const k of keys) {
      const v = root.getPropertyValue(k);
      if (v) push(v, 2.0);
    }
  } catch (e) {}

  const els = Array.from(document.querySelectorAll(UI_SELECTORS.join(','))).slice(0, 180);
  for (const el of els) {
    const rect = el.getBoundingClientRect();
    if (rect.width < 24 || rect.height < 12) continue;
    if (rect.bottom < 0 || rect.right < 0 || rect.top > window.innerHeight || rect.left > window.innerWidth) continue;
    const area = Math.min(rect.width * rect.height, window.innerWidth * window.innerHeight);
    const w = Math.max(0.2, Math.min(6.0, area / 40000));
    const cs = getComputedStyle(el);
    if (!TRANSPARENT(cs.backgroundColor)) push(cs.backgroundColor, w * 1.2);
    if (cs.color) push(cs.color, w * 0.7);
    if (!TRANSPARENT(cs.borderTopColor)) push(cs.borderTopColor, w * 0.3);
  }
  return out;
}
"""


def _cache_key(target_url: str) -> str:
    try:
        host = urlparse(target_url).hostname
    except ValueError:
        host = None
    return host or target_url[:120]


def weighted_colors(raw: List[Dict[str, Any]], limit: int = 10) -> List[ColorByArea]:
    """Sum per-element weights by hex, normalize to ratios, colorful colors first."""
    weights: Dict[str, float] = {}
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        hx = str(item.get("hex") or "").upper()
        try:
            w = float(item.get("w") or 0)
        except (TypeError, ValueError):
            continue
        if not is_hex6(hx) or not w > 0 or w == float("inf"):
            continue
        weights[hx] = weights.get(hx, 0.0) + w
    total = sum(weights.values()) or 1.0
    ranked = sorted(weights.items(), key=lambda kv: kv[1], reverse=True)[:limit]
    by_hex = {hx: ColorByArea(hex=hx, ratio=min(1.0, w / total)) for hx, w in ranked}
    return [by_hex[hx] for hx in colorful_first([hx for hx, _ in ranked])]


def palette_from_ui_colors(raw: List[Dict[str, Any]], limit: int = 3) -> List[str]:
    """Distinct uppercase #RRGGBB colors from computed-style samples, colorful first."""
    ranked = [c.hex for c in weighted_colors(raw, limit=50)][:6]
    return list(dict.fromkeys(hx for hx in ranked if is_hex6(hx)))[:limit]


def classify_image_kind(svg_count: int, raster_count: int) -> str:
    if svg_count > max(IMAGE_KIND_MARGIN, raster_count):
        return KIND_ICON
    if raster_count > max(IMAGE_KIND_MARGIN, svg_count):
        return KIND_PHOTO
    return KIND_MIXED


def build_visual_report(
    page_info: Dict[str, Any],
    computed_raw: List[Dict[str, Any]],
    screenshot_colors: List[ColorByArea],
    people: str,
    viewport: Optional[Dict[str, int]] = None,
) -> VisualBrandReport:
    """Reconcile the two color signals and summarize the page's imagery."""
    img_ratio = float(page_info.get("imgAreaRatio") or 0)
    bg_ratio = float(page_info.get("bgImgAreaRatio") or 0)
    computed = weighted_colors(computed_raw)

    photo_heavy = (img_ratio + bg_ratio) >= PHOTO_HEAVY_THRESHOLD
    colors = computed if (photo_heavy and len(computed) >= 2) else list(screenshot_colors)

    main = colors[0].hex if colors else None
    subs = select_sub_colors(main, [c.hex for c in colors[1:]])

    svg_count = int(page_info.get("svgCount") or 0)
    raster_count = int(page_info.get("rasterCount") or 0)
    kind = classify_image_kind(svg_count, raster_count)

    color_summary = ", ".join(f"{c.hex}({round(c.ratio * 100)}%)" for c in colors[:8])
    image_summary = (
        f"images={int(page_info.get('imgCount') or 0)} (raster={raster_count}, svg≈{svg_count}, "
        f"icons={int(page_info.get('iconCount') or 0)}) / kind={kind} / "
        f"viewport_image_area={round(img_ratio * 100)}% / viewport_bg_image_area={round(bg_ratio * 100)}% / "
        f"people={people}"
    )
    return VisualBrandReport(
        viewport=dict(viewport or VIEWPORT),
        colors_by_area=colors,
        main_color=main,
        sub_colors=subs,
        color_summary_text=color_summary,
        image_summary_text=image_summary,
        image_area_ratio=img_ratio,
        bg_image_area_ratio=bg_ratio,
        people=people,
    )


async def _block_resources(page, blocked: tuple[str, ...]) -> None:
    async def _handler(route):
        if route.request.resource_type in blocked:
            await route.abort()
        else:
            await route.continue_()

    await page.route("**/*", _handler)


async def _goto(page, url: str, timeout_ms: int) -> None:
    try:
        await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
    except Exception:
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except Exception as e:
            log.info("headless navigation incomplete for %s: %s", _cache_key(url), type(e).__name__)


async def analyze_site_visual(
    target_url: str,
    timeout_ms: int = 16_000,
    cache: Optional[TTLCache] = None,
    vision_api_key: Optional[str] = None,
) -> VisualBrandReport:
    if headless_color_disabled():
        return VisualBrandReport()

    key = _cache_key(target_url)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return cached

    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                context = await browser.new_context(viewport=VIEWPORT)
                page = await context.new_page()
                # images stay on so photo-heavy layouts render as users see them
                await _block_resources(page, ("font", "media"))
                await _goto(page, target_url, timeout_ms)
                await page.wait_for_timeout(SETTLE_MS)

                page_info = await page.evaluate(_PAGE_INFO_JS) or {}
                computed_raw = await page.evaluate(_COMPUTED_COLORS_JS) or []
                screenshot = await page.screenshot(type="png")
            finally:
                await browser.close()
    except Exception as e:
        log.warning("headless visual analysis failed for %s: %s", key, e)
        return VisualBrandReport()

    screenshot_colors = await asyncio.to_thread(colors_by_area_from_screenshot, screenshot)
    candidates = page_info.get("imgCandidates") if isinstance(page_info.get("imgCandidates"), list) else []
    api_key = vision_api_key if vision_api_key is not None else get_vision_api_key()
    people = await asyncio.to_thread(detect_people, candidates, api_key)

    try:
        report = build_visual_report(page_info, computed_raw, screenshot_colors, people)
    except Exception as e:
        log.warning("visual report assembly failed for %s: %s", key, e)
        return VisualBrandReport()
    if cache is not None:
        cache.set(key, report)
    return report


async def extract_palette_via_headless_computed_styles(
    target_url: str,
    timeout_ms: int = 12_000,
    cache: Optional[TTLCache] = None,
) -> List[str]:
    """Up to 3 UI colors from computed styles only (images, fonts and media blocked)."""
    if headless_color_disabled():
        return []
    try:
        key = urlparse(target_url).hostname
    except ValueError:
        key = None
    if not key:
        return []
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return cached

    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                context = await browser.new_context(viewport=VIEWPORT)
                page = await context.new_page()
                await _block_resources(page, ("image", "font", "media"))
                await page.goto(target_url, wait_until="domcontentloaded", timeout=timeout_ms)
                raw = await page.evaluate(_UI_PALETTE_JS) or []
            finally:
                await browser.close()
    except Exception as e:
        log.warning("headless palette failed for %s: %s", key, e)
        return []

    palette = palette_from_ui_colors(raw)
    if cache is not None:
        cache.set(key, palette)
    return palette
