"""Palette fusion, image-derived colors and the hostname-keyed caches."""
import base64
import io
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from PIL import Image, ImageOps, ImageStat

from doya_banner.colors import is_hex6, rgb_to_hex
from doya_banner.integrations.site_client import fetch_bytes

log = logging.getLogger(__name__)

HEADLESS_PALETTE_TTL = 6 * 60 * 60
HEADLESS_VISUAL_TTL = 2 * 60 * 60

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Time-bounded map keyed by hostname.

    No cross-request locking beyond the dict itself: two concurrent misses for
    the same host both recompute and the last write wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: Dict[str, tuple[float, T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            hit = self._items.get(key)
            if hit is None:
                return None
            ts, value = hit
            if self._clock() - ts >= self.ttl_seconds:
                self._items.pop(key, None)
                return None
            return value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = (self._clock(), value)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class ColorByArea:
    hex: str
    ratio: float


def _quantized_histogram(img: Image.Image) -> Counter:
    """4-bit per channel buckets (4096 total) -> pixel count."""
    counts: Counter = Counter()
    for r, g, b in img.getdata():
        counts[((r >> 4) << 8) | ((g >> 4) << 4) | (b >> 4)] += 1
    return counts


def _bucket_to_hex(key: int) -> str:
    # bin 0..15 maps to 0,17,34,...,255
    return rgb_to_hex(((key >> 8) & 0x0F) * 17, ((key >> 4) & 0x0F) * 17, (key & 0x0F) * 17)


def colors_by_area_from_screenshot(png: bytes, sample_w: int = 160, sample_h: int = 100) -> List[ColorByArea]:
    """Dominant colors of a screenshot with their share of the (downsampled) area."""
    try:
        with Image.open(io.BytesIO(png)) as im:
            small = im.convert("RGB").resize((sample_w, sample_h))
        total = max(1, small.width * small.height)
        top = _quantized_histogram(small).most_common(16)
        merged: Dict[str, float] = {}
        for key, count in top:
            hx = _bucket_to_hex(key)
            merged[hx] = merged.get(hx, 0.0) + count / total
        ranked = sorted(merged.items(), key=lambda kv: kv[1], reverse=True)[:10]
        return [ColorByArea(hex=hx, ratio=ratio) for hx, ratio in ranked]
    except Exception as e:
        log.info("screenshot histogram failed: %s", e)
        return []


def dominant_color_hex(data: bytes) -> str | None:
    """Most common quantized color of a small thumbnail; channel mean as fallback."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            im = im.convert("RGB")
            im.thumbnail((128, 128))
            top = _quantized_histogram(im).most_common(1)
            if top:
                return _bucket_to_hex(top[0][0])
            mean = ImageStat.Stat(im).mean
            if len(mean) >= 3:
                return rgb_to_hex(mean[0], mean[1], mean[2])
    except Exception:
        return None
    return None


def extract_palette_from_images(urls: Iterable[str], timeout: float = 6) -> List[str]:
    """Dominant color of each representative image; failures are skipped."""
    colors: List[str] = []
    for u in urls:
        fetched = fetch_bytes(u, timeout=timeout)
        if not fetched:
            continue
        hx = dominant_color_hex(fetched[1])
        if hx:
            colors.append(hx)
    return list(dict.fromkeys(colors))[:3]


MAX_REFERENCE_B64 = 900_000


def fetch_image_as_reference_data_url(url: str, timeout: float = 7) -> str | None:
    """Download an image and shrink it into a JPEG data URL for the image model."""
    fetched = fetch_bytes(url, timeout=timeout)
    if not fetched:
        return None
    try:
        with Image.open(io.BytesIO(fetched[1])) as im:
            im = ImageOps.exif_transpose(im).convert("RGB")
            im.thumbnail((640, 640))
            buf = io.BytesIO()
            im.save(buf, format="JPEG", quality=72, optimize=True)
        b64 = base64.b64encode(buf.getvalue()).decode("ascii")
        if len(b64) > MAX_REFERENCE_B64:
            return None
        return f"data:image/jpeg;base64,{b64}"
    except Exception:
        return None


def fuse_palettes(*palettes: Optional[Iterable[str]], limit: int = 3) -> List[str]:
    """Merge palettes in priority order: uppercase, strict #RRGGBB, no duplicates."""
    merged: List[str] = []
    for palette in palettes:
        for c in palette or []:
            hx = str(c or "").strip().upper()
            if is_hex6(hx) and hx not in merged:
                merged.append(hx)
    return merged[:limit]
