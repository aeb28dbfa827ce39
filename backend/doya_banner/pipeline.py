"""Site signal collection and the glue between signals, prompt and generation."""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from doya_banner.colors import is_hex6
from doya_banner.extractors import (
    InferredBannerInfo,
    extract_color_hints,
    extract_image_candidates,
    extract_likely_hero_images,
    extract_meta,
    extract_palette_from_css,
    extract_product_like_images,
    infer_banner_info_from_text,
    strip_html_to_text,
)
from doya_banner.integrations.headless import VisualBrandReport, analyze_site_visual
from doya_banner.palette import (
    TTLCache,
    extract_palette_from_images,
    fetch_image_as_reference_data_url,
    fuse_palettes,
)
from doya_banner.prompts import BannerPromptInput, build_base_design_prompt

log = logging.getLogger(__name__)

MAX_IMAGE_SOURCES = 8
MAX_AUTO_REFERENCE_SOURCES = 4
MAX_AUTO_REFERENCES = 2


def _unique(*lists: List[str]) -> List[str]:
    return list(dict.fromkeys(u for lst in lists for u in (lst or []) if u))


@dataclass
class SiteSignals:
    meta: Dict[str, str]
    page_text: str
    html_color_hints: str = ""
    css_palette: List[str] = field(default_factory=list)
    visual: VisualBrandReport = field(default_factory=VisualBrandReport)
    image_candidates: List[str] = field(default_factory=list)
    hero_images: List[str] = field(default_factory=list)
    product_images: List[str] = field(default_factory=list)
    image_palette: List[str] = field(default_factory=list)
    inferred: InferredBannerInfo = field(default_factory=InferredBannerInfo)

    @property
    def image_sources(self) -> List[str]:
        return _unique(self.image_candidates, self.hero_images, self.product_images)[:MAX_IMAGE_SOURCES]

    @property
    def area_palette(self) -> List[str]:
        hexes = [str(c.hex or "").upper() for c in self.visual.colors_by_area]
        return [h for h in hexes if is_hex6(h)][:3]

    @property
    def merged_palette(self) -> List[str]:
        return fuse_palettes(self.area_palette, self.css_palette, self.image_palette)

    def color_hints(self) -> str:
        parts = [
            f"html={self.html_color_hints}" if self.html_color_hints else "",
            f"headless_area_palette={','.join(self.area_palette)}" if self.area_palette else "",
            f"css_palette={','.join(self.css_palette[:3])}" if self.css_palette else "",
            f"image_palette={','.join(self.image_palette)}" if self.image_palette else "",
            f"image_sources={','.join(self.image_sources[:2])}" if self.image_sources else "",
        ]
        return " / ".join(p for p in parts if p)

    def visual_hints(self) -> str:
        parts = [
            f"colors_by_area={self.visual.color_summary_text}" if self.visual.color_summary_text else "",
            f"visual_image={self.visual.image_summary_text}" if self.visual.image_summary_text else "",
            f"product_image_candidates={','.join(self.product_images[:2])}" if self.product_images else "",
        ]
        return " / ".join(p for p in parts if p)

    def brand_colors(self) -> List[str]:
        """Visual main + subs when the headless pass found a main color, else the merged palette."""
        if self.visual.main_color:
            colors = [str(c or "").upper() for c in [self.visual.main_color, *self.visual.sub_colors]]
            return [c for c in colors if is_hex6(c)][:3]
        return self.merged_palette


def extract_static_signals(html: str, target_url: str) -> SiteSignals:
    meta = extract_meta(html)
    page_text = strip_html_to_text(html)
    return SiteSignals(
        meta=meta,
        page_text=page_text,
        html_color_hints=extract_color_hints(html),
        css_palette=extract_palette_from_css(html),
        image_candidates=extract_image_candidates(html, target_url),
        hero_images=extract_likely_hero_images(html, target_url),
        product_images=extract_product_like_images(html, target_url),
        inferred=infer_banner_info_from_text(target_url, meta.get("title"), meta.get("description"), page_text),
    )


async def collect_site_signals(
    html: str,
    target_url: str,
    *,
    visual_cache: Optional[TTLCache] = None,
    vision_api_key: Optional[str] = None,
) -> SiteSignals:
    """Static extraction, then the headless pass and image palette side by side."""
    signals = extract_static_signals(html, target_url)
    visual, image_palette = await asyncio.gather(
        analyze_site_visual(target_url, cache=visual_cache, vision_api_key=vision_api_key),
        asyncio.to_thread(extract_palette_from_images, signals.image_sources),
    )
    signals.visual = visual
    signals.image_palette = image_palette
    return signals


def build_prompt_input(
    signals: SiteSignals,
    *,
    target_url: str,
    size: str,
    logo_image: Optional[str] = None,
    person_images: int = 0,
    main_color: Optional[str] = None,
    sub_color: Optional[str] = None,
    tone_keywords: Optional[str] = None,
    avoid: Optional[str] = None,
    must_include: Optional[str] = None,
) -> BannerPromptInput:
    merged = signals.merged_palette
    visual = signals.visual
    return BannerPromptInput(
        target_url=target_url,
        size=size,
        logo_image=logo_image,
        person_images=person_images,
        main_color=main_color or visual.main_color or (merged[0] if merged else None),
        sub_color=sub_color or (visual.sub_colors[0] if visual.sub_colors else None) or (merged[1] if len(merged) > 1 else None),
        tone_keywords=tone_keywords,
        avoid=avoid,
        must_include=must_include,
        page_title=signals.meta.get("title", ""),
        page_description=signals.meta.get("description", ""),
        page_text=signals.page_text,
        color_hints=signals.color_hints(),
        visual_hints=signals.visual_hints(),
        inferred=signals.inferred,
    )


def collect_reference_images(signals: SiteSignals) -> List[str]:
    """Up to 2 site images (product shots first) as shrunken JPEG data URLs."""
    sources = _unique(signals.product_images, signals.image_candidates, signals.hero_images)[:MAX_AUTO_REFERENCE_SOURCES]
    out: List[str] = []
    for u in sources:
        data_url = fetch_image_as_reference_data_url(u)
        if data_url:
            out.append(data_url)
        if len(out) >= MAX_AUTO_REFERENCES:
            break
    return out


def build_generation_options(
    signals: SiteSignals,
    *,
    image_prompt: str,
    negative_prompt: str,
    purpose: str,
    auto_references: List[str],
    base_image: Optional[str] = None,
    logo_image: Optional[str] = None,
    person_images: Optional[List[str]] = None,
    reference_images: Optional[List[str]] = None,
    brand_colors: Optional[List[str]] = None,
) -> Dict[str, Any]:
    if base_image:
        refs: Optional[List[str]] = [base_image, *auto_references[:1]]
    elif reference_images:
        refs = list(reference_images)
    else:
        refs = auto_references or None
    return {
        "purpose": purpose,
        "logoImage": logo_image,
        # one person photo at most
        "personImages": list(person_images)[:1] if person_images else None,
        "referenceImages": refs,
        "brandColors": list(brand_colors) if brand_colors is not None else (signals.brand_colors() or None),
        "customImagePrompt": build_base_design_prompt(image_prompt) if base_image else image_prompt,
        "negativePrompt": negative_prompt,
        "variationMode": "similar" if base_image else "diverse",
    }


_CTA_RE = re.compile(r"(CTA|アクション)[：:]\s*(.{2,30})", re.IGNORECASE)
_TONE_RE = re.compile(r"(トーン|雰囲気)[：:]\s*(.{2,20})", re.IGNORECASE)
_CLAUSE_SPLIT_RE = re.compile(r"[、。]")


def legacy_analysis_json(banner_analysis: str) -> Dict[str, Optional[str]]:
    """key_message / cta / tone pulled out of the free-text analysis for older clients."""
    text = str(banner_analysis or "")
    out: Dict[str, Optional[str]] = {"key_message": text or None, "cta": None, "tone": None}
    m = _CTA_RE.search(text)
    if m:
        out["cta"] = _CLAUSE_SPLIT_RE.split(m.group(2))[0].strip()
    m = _TONE_RE.search(text)
    if m:
        out["tone"] = _CLAUSE_SPLIT_RE.split(m.group(2))[0].strip()
    return out
