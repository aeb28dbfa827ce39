"""Regex heuristics over already-fetched HTML.

Everything here is a pure function of its inputs and never raises: malformed
HTML or URLs simply produce empty results. Speed matters more than strict HTML
parsing.
"""
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple, Union
from urllib.parse import urljoin, urlparse

from doya_banner.colors import colorful_first, expand_hex, normalize_css_color_to_hex


def safe_trim(value: Any, max_len: int = 4000) -> str:
    s = value if isinstance(value, str) else ""
    return s.strip()[:max_len]


def is_valid_http_url(raw: str) -> bool:
    try:
        u = urlparse(str(raw or "").strip())
        return u.scheme in ("http", "https") and bool(u.netloc) and bool(u.hostname)
    except Exception:
        return False


def to_absolute_url(maybe_url: str, base_url: str) -> str | None:
    raw = str(maybe_url or "").strip()
    if not raw:
        return None
    try:
        absolute = urljoin(base_url, raw)
    except Exception:
        return None
    return absolute if is_valid_http_url(absolute) else None


def _dedupe(items: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(items))


# ---------------- Text / meta ----------------
_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_NOSCRIPT_RE = re.compile(r"<noscript[\s\S]*?</noscript>", re.IGNORECASE)
_BLOCK_CLOSE_RE = re.compile(r"</(p|div|br|li|h1|h2|h3|h4|h5|h6)>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def strip_html_to_text(html: str) -> str:
    try:
        s = str(html or "")
        s = _SCRIPT_RE.sub(" ", s)
        s = _STYLE_RE.sub(" ", s)
        s = _NOSCRIPT_RE.sub(" ", s)
        s = _BLOCK_CLOSE_RE.sub("\n", s)
        s = _TAG_RE.sub(" ", s)
        s = s.replace("&nbsp;", " ").replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
        s = re.sub(r"\s+\n", "\n", s)
        s = re.sub(r"\n{3,}", "\n\n", s)
        s = re.sub(r"[ \t]{2,}", " ", s)
        return s.strip()
    except Exception:
        return ""


_TITLE_RE = re.compile(r"<title[^>]*>([^<]{1,500})</title>", re.IGNORECASE)
_OG_TITLE_RE = re.compile(r"<meta[^>]+property=[\"']og:title[\"'][^>]+content=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_DESC_RE = re.compile(r"<meta[^>]+name=[\"']description[\"'][^>]+content=[\"']([^\"']{1,800})[\"'][^>]*>", re.IGNORECASE)
_OG_DESC_RE = re.compile(r"<meta[^>]+property=[\"']og:description[\"'][^>]+content=[\"']([^\"']{1,800})[\"'][^>]*>", re.IGNORECASE)


def _pick(pattern: Pattern[str], html: str) -> str:
    m = pattern.search(html)
    return m.group(1).strip() if m else ""


def extract_meta(html: str) -> Dict[str, str]:
    """Page title/description, Open Graph first. Truncated to 200/320 chars."""
    try:
        s = str(html or "")
        title = _pick(_OG_TITLE_RE, s) or _pick(_TITLE_RE, s)
        desc = _pick(_OG_DESC_RE, s) or _pick(_DESC_RE, s)
        return {"title": title[:200], "description": desc[:320]}
    except Exception:
        return {"title": "", "description": ""}


# ---------------- Colors ----------------
_THEME_COLOR_RE = re.compile(r"<meta[^>]+name=[\"']theme-color[\"'][^>]+content=[\"']([^\"']{1,64})[\"']", re.IGNORECASE)
_TILE_COLOR_RE = re.compile(r"<meta[^>]+name=[\"']msapplication-TileColor[\"'][^>]+content=[\"']([^\"']{1,64})[\"']", re.IGNORECASE)
_HEX_LITERAL_RE = re.compile(r"#[0-9a-fA-F]{3,6}\b")
_CSS_VAR_RE = re.compile(
    r"--(?:primary|main|brand|accent|secondary|theme|color|cta|link|btn)[a-zA-Z0-9_-]{0,40}\s*:\s*([^;]{1,80});",
    re.IGNORECASE,
)


def _hex_literals(html: str) -> List[str]:
    out = []
    for c in _HEX_LITERAL_RE.findall(html):
        hx = expand_hex(c)
        if hx:
            out.append(hx)
    return out


def extract_color_hints(html: str) -> str:
    """Human-readable color hints: theme-color and the most frequent hex literals."""
    try:
        s = str(html or "")
        theme = _pick(_THEME_COLOR_RE, s)
        top = Counter(_hex_literals(s)).most_common(10)
        parts = []
        if theme:
            parts.append(f"theme-color={theme}")
        if top:
            parts.append("html/css hex top=" + ", ".join(f"{c}({n})" for c, n in top))
        return " / ".join(parts)
    except Exception:
        return ""


CSS_PALETTE_LIMIT = 3


def extract_palette_from_css(html: str) -> List[str]:
    """Up to 3 brand colors from meta colors, brand-ish CSS variables and raw hex."""
    try:
        s = str(html or "")
        candidates: List[str] = []
        for v in (_pick(_THEME_COLOR_RE, s), _pick(_TILE_COLOR_RE, s)):
            hx = normalize_css_color_to_hex(v)
            if hx:
                candidates.append(hx)

        for m in _CSS_VAR_RE.finditer(s):
            hx = normalize_css_color_to_hex(m.group(1))
            if hx:
                candidates.append(hx)
            if len(candidates) > 30:
                break

        for c in _HEX_LITERAL_RE.findall(s)[:400]:
            hx = normalize_css_color_to_hex(c)
            if hx:
                candidates.append(hx)

        uniq = _dedupe([c.upper() for c in candidates])
        return colorful_first(uniq)[:CSS_PALETTE_LIMIT]
    except Exception:
        return []


# ---------------- Images ----------------
_OG_IMAGE_RE = re.compile(r"<meta[^>]+property=[\"']og:image[\"'][^>]+content=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_TWITTER_IMAGE_RE = re.compile(r"<meta[^>]+name=[\"']twitter:image[\"'][^>]+content=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_APPLE_ICON_RE = re.compile(r"<link[^>]+rel=[\"']apple-touch-icon[\"'][^>]+href=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_ICON_RE = re.compile(r"<link[^>]+rel=[\"']icon[\"'][^>]+href=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_SHORTCUT_ICON_RE = re.compile(r"<link[^>]+rel=[\"']shortcut icon[\"'][^>]+href=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_IMG_RE = re.compile(r"<img[^>]+src=[\"']([^\"']{1,500})[\"'][^>]*>", re.IGNORECASE)
_ALT_RE = re.compile(r"\salt=[\"']([^\"']{0,120})[\"']", re.IGNORECASE)
_CLASS_RE = re.compile(r"\sclass=[\"']([^\"']{0,200})[\"']", re.IGNORECASE)

_PRODUCT_ALT_WORDS = ("商品", "製品", "プロダクト", "product", "item")
_PRODUCT_CLASS_WORDS = ("product", "item", "goods", "card")
_PRODUCT_URL_WORDS = ("/product", "/item", "/goods", "/sku", "product", "item")


def extract_image_candidates(html: str, base_url: str) -> List[str]:
    """OG/Twitter images and site icons (max 4)."""
    try:
        s = str(html or "")
        picks = []
        for pattern in (_OG_IMAGE_RE, _TWITTER_IMAGE_RE, _APPLE_ICON_RE, _ICON_RE, _SHORTCUT_ICON_RE):
            absolute = to_absolute_url(_pick(pattern, s), base_url)
            if absolute:
                picks.append(absolute)
        return _dedupe(picks)[:4]
    except Exception:
        return []


def extract_likely_hero_images(html: str, base_url: str) -> List[str]:
    """First few <img> sources, for pages without useful OG images."""
    try:
        urls: List[str] = []
        for m in _IMG_RE.finditer(str(html or "")):
            absolute = to_absolute_url(m.group(1), base_url)
            if absolute:
                urls.append(absolute)
            if len(urls) >= 6:
                break
        return _dedupe(urls)[:6]
    except Exception:
        return []


def extract_product_like_images(html: str, base_url: str) -> List[str]:
    """<img> tags that look like product shots (alt/class/URL hints), icons and logos excluded."""
    try:
        urls: List[str] = []
        for m in _IMG_RE.finditer(str(html or "")):
            tag = m.group(0)
            absolute = to_absolute_url(m.group(1), base_url)
            if not absolute:
                continue
            lower_tag = tag.lower()
            lower_url = absolute.lower()
            alt = _pick(_ALT_RE, tag).lower()
            cls = _pick(_CLASS_RE, tag).lower()

            looks_product = (
                any(w in alt for w in _PRODUCT_ALT_WORDS)
                or any(w in cls for w in _PRODUCT_CLASS_WORDS)
                or any(w in lower_url for w in _PRODUCT_URL_WORDS)
            )
            iconish = lower_url.endswith(".svg") or "icon" in lower_tag or "logo" in lower_tag
            if looks_product and not iconish:
                urls.append(absolute)
                if len(urls) >= 10:
                    break
        return _dedupe(urls)[:10]
    except Exception:
        return []


# ---------------- Industry / objective / target inference ----------------
Keyword = Union[str, Pattern[str]]


@dataclass
class InferredBannerInfo:
    industry: Optional[str] = None
    objective: Optional[str] = None
    target: Optional[str] = None
    evidence_keywords: Optional[List[str]] = None


@dataclass(frozen=True)
class IndustryRule:
    industry: str
    keywords: Tuple[Keyword, ...]
    evidence: Tuple[str, ...] = field(default_factory=tuple)
    target: Optional[str] = None


# First match wins; order is the priority.
INDUSTRY_RULES: Tuple[IndustryRule, ...] = (
    IndustryRule(
        "EC/セール/キャンペーン",
        ("ec", "カート", "購入", "送料無料", "セール", "クーポン", "%off", "off", re.compile(r"楽天|amazon|shopify", re.IGNORECASE)),
        ("セール", "クーポン", "送料無料", "購入"),
        "購入検討中の個人ユーザー",
    ),
    IndustryRule(
        "教育/スクール",
        ("スクール", "講座", "受講", "オンライン講座", "カリキュラム", "資格", "未経験", "学習", "教材"),
        ("未経験", "受講", "資格", "カリキュラム"),
        "学習者（未経験/スキルアップ/転職目的など）",
    ),
    IndustryRule(
        "転職/採用/人材",
        ("採用", "求人", "エントリー", "転職", "面談", "スカウト", "応募", "人材", "キャリア"),
        ("採用", "求人", "応募", "面談"),
        "求職者または採用担当者",
    ),
    IndustryRule(
        "美容/健康/食品",
        ("美容", "コスメ", "スキンケア", "毛穴", "美白", "エステ", "ダイエット", "サプリ", "健康", "食品", "成分", "監修"),
        ("成分", "監修", "スキンケア", "健康"),
        "悩みを持つ個人（主に女性/健康志向）",
    ),
    IndustryRule(
        "BtoB/SaaS",
        ("saas", "b2b", "導入", "資料請求", "無料相談", "工数", "業務", "効率化", "課題", "解決", "法人", "セキュリティ", "api"),
        ("導入", "資料請求", "無料相談", "効率化"),
        "法人担当者（経営者/マーケ/情シス/営業/人事など）",
    ),
    IndustryRule(
        "情報商材/ノウハウ/AIツール",
        ("ノウハウ", "教材", "メルマガ", "LINE登録", "無料プレゼント", "特典", "セミナー", "ウェビナー", "AIツール"),
        ("特典", "無料", "セミナー", "AI"),
    ),
    IndustryRule(
        "Web/IT/マーケ支援",
        ("web制作", "制作会社", "マーケティング", "広告運用", "lp", "seo", "sns"),
        ("広告運用", "SEO", "SNS", "LP"),
    ),
)

OBJECTIVE_RULES: Tuple[Tuple[Tuple[Keyword, ...], str], ...] = (
    (("資料請求", "ホワイトペーパー", "download", "ダウンロード"), "資料DL"),
    (("問い合わせ", "お問い合わせ", "contact"), "問い合わせ"),
    (("無料相談", "相談", "demo", "デモ"), "無料相談"),
    (("購入", "カート", "注文", "buy"), "購入"),
    (("申し込み", "申込", "予約", "エントリー", "応募"), "申込/応募"),
)

MAX_EVIDENCE = 12


def _hit(blob: str, keywords: Sequence[Keyword]) -> bool:
    for w in keywords:
        if isinstance(w, str):
            if w.lower() in blob:
                return True
        elif w.search(blob):
            return True
    return False


def infer_banner_info_from_text(url: str, title: str | None, description: str | None, page_text: str | None) -> InferredBannerInfo:
    """Best-effort keyword guess of industry, objective and audience.

    This is only a hint for the prompt; the model is told to prefer the page text.
    """
    try:
        blob = f"{url or ''}\n{title or ''}\n{description or ''}\n{page_text or ''}".lower()
        info = InferredBannerInfo()
        evidence: List[str] = []

        for rule in INDUSTRY_RULES:
            if _hit(blob, rule.keywords):
                info.industry = rule.industry
                info.target = rule.target
                for w in rule.evidence:
                    if w.lower() in blob:
                        evidence.append(w)
                    if len(evidence) >= MAX_EVIDENCE:
                        break
                break

        for keywords, objective in OBJECTIVE_RULES:
            if _hit(blob, keywords):
                info.objective = objective
                break

        if evidence:
            info.evidence_keywords = _dedupe(evidence)
        return info
    except Exception:
        return InferredBannerInfo()
