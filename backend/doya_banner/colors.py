"""Small color helpers shared by the static extractors and the headless analyzer.

All hex values produced here are uppercase ``#RRGGBB``.
"""
import math
import re
from typing import Iterable, List, Tuple

HEX6_RE = re.compile(r"^#[0-9A-F]{6}$")
_HEX_IN_TEXT_RE = re.compile(r"#[0-9a-fA-F]{3,8}\b")
_RGB_FUNC_RE = re.compile(r"^rgba?\((\d{1,3}),(\d{1,3}),(\d{1,3})(?:,([\d.]+))?\)$", re.IGNORECASE)

# Colors whose alpha is at or below this are treated as "not painted".
MIN_ALPHA = 0.08
# Sub colors closer than this (Euclidean RGB) to an already chosen color are skipped.
MIN_SUB_DISTANCE = 32.0


def is_hex6(value: str) -> bool:
    return bool(HEX6_RE.match(value or ""))


def rgb_to_hex(r: float, g: float, b: float) -> str:
    def _to(n: float) -> str:
        return f"{max(0, min(255, int(round(n)))):02X}"

    return f"#{_to(r)}{_to(g)}{_to(b)}"


def hex_to_rgb(value: str) -> Tuple[int, int, int] | None:
    h = str(value or "").strip().upper()
    if not HEX6_RE.match(h):
        return None
    return int(h[1:3], 16), int(h[3:5], 16), int(h[5:7], 16)


def expand_hex(value: str) -> str | None:
    """#abc -> #AABBCC; #aabbcc -> #AABBCC; anything else -> None."""
    up = str(value or "").strip().upper()
    if len(up) == 4 and up.startswith("#"):
        up = f"#{up[1]}{up[1]}{up[2]}{up[2]}{up[3]}{up[3]}"
    return up if HEX6_RE.match(up) else None


def normalize_css_color_to_hex(value: str) -> str | None:
    """Normalize a CSS color value (hex or rgb()/rgba()) to #RRGGBB."""
    raw = str(value or "").strip()
    if not raw:
        return None
    m = _HEX_IN_TEXT_RE.search(raw)
    if m:
        hx = m.group(0)
        # 8-digit (#RRGGBBAA) and 4-digit forms carry alpha; not handled
        if len(hx) in (4, 7):
            return expand_hex(hx)
    m = _RGB_FUNC_RE.match(re.sub(r"\s+", "", raw))
    if m:
        r, g, b = int(m.group(1)), int(m.group(2)), int(m.group(3))
        try:
            a = 1.0 if m.group(4) is None else float(m.group(4))
        except ValueError:
            return None
        if a <= MIN_ALPHA:
            return None
        return rgb_to_hex(r, g, b)
    return None


def is_near_neutral_hex(value: str) -> bool:
    """True for white/black/grey-ish colors (and for anything that isn't #RRGGBB)."""
    rgb = hex_to_rgb(value)
    if rgb is None:
        return True
    hi = max(rgb)
    lo = min(rgb)
    if hi - lo < 10:
        return True
    if hi > 245 and lo > 235:
        return True
    if hi < 25 and lo < 15:
        return True
    return False


def color_distance(a: str, b: str) -> float:
    ra = hex_to_rgb(a)
    rb = hex_to_rgb(b)
    if ra is None or rb is None:
        return 999.0
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(ra, rb)))


def colorful_first(colors: Iterable[str]) -> List[str]:
    items = list(colors)
    return [c for c in items if not is_near_neutral_hex(c)] + [c for c in items if is_near_neutral_hex(c)]


def select_sub_colors(main: str | None, ranked: List[str], limit: int = 3) -> List[str]:
    """Pick up to ``limit`` accent colors from ``ranked`` (already ordered by area).

    First pass skips near-duplicates of main/chosen colors and holds back neutral
    colors until two accents are found. If fewer than two were found, a backfill
    pass admits neutral colors too, still keeping clear of the main color.
    """
    subs: List[str] = []
    for hx in ranked:
        if not hx:
            continue
        if len(subs) >= limit:
            break
        if main and color_distance(main, hx) < MIN_SUB_DISTANCE:
            continue
        if any(color_distance(s, hx) < MIN_SUB_DISTANCE for s in subs):
            continue
        if is_near_neutral_hex(hx) and len(subs) < 2:
            continue
        subs.append(hx)

    if len(subs) < 2:
        for hx in ranked:
            if len(subs) >= limit:
                break
            if not hx or hx in subs:
                continue
            if main and color_distance(main, hx) < MIN_SUB_DISTANCE:
                continue
            subs.append(hx)
    return subs
