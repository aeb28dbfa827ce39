import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import google.generativeai as genai
import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from doya_banner.config import BANNER_IMAGE_MODELS, GEMINI_JSON_MODELS, get_genai_api_key

log = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TIMEOUT = 120

BANNER_JSON_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "banner_analysis": {"type": "STRING"},
        "image_generation_prompt": {"type": "STRING"},
        "negative_prompt": {"type": "STRING"},
    },
    "required": ["banner_analysis", "image_generation_prompt"],
}

SAFETY_SETTINGS = [
    {"category": c, "threshold": "BLOCK_ONLY_HIGH"}
    for c in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

MODEL_DISPLAY_NAMES = {
    "gemini-3-pro-image-preview": "Nano Banana Pro",
    "gemini-2.5-flash-image-preview": "Nano Banana",
    "gemini-2.5-flash-image": "Nano Banana",
}


class GeminiJsonError(RuntimeError):
    pass


class BannerGenerationError(RuntimeError):
    pass


def _to_data_url(mime: str, b: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(b).decode('ascii')}"


# ---------------- Tolerant JSON parsing ----------------
_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)


def _first_balanced_object(t: str) -> Optional[str]:
    """First {...} substring whose braces balance, ignoring braces inside strings."""
    start = t.find("{")
    if start == -1:
        return None
    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(t)):
        ch = t[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return t[start:i + 1]
    return None


def coerce_json(text: str | None) -> Any:
    """Parse model output that should be JSON but may be fenced or wrapped in prose."""
    t = str(text or "").strip()
    if not t:
        return None
    try:
        return json.loads(t)
    except ValueError:
        pass
    m = _FENCE_RE.search(t)
    if m and m.group(1).strip():
        try:
            return json.loads(m.group(1).strip())
        except ValueError:
            pass
    candidate = _first_balanced_object(t)
    if candidate:
        try:
            return json.loads(candidate)
        except ValueError:
            return None
    return None


# ---------------- JSON generation (REST) ----------------
class _TransientGeminiError(Exception):
    def __init__(self, response: requests.Response):
        super().__init__(f"Gemini transient {response.status_code}")
        self.response = response


@retry(
    stop=stop_after_attempt(2),
    wait=wait_fixed(0.7),
    retry=retry_if_exception_type(_TransientGeminiError),
    reraise=True,
)
def _post_generate(model: str, api_key: str, body: dict) -> requests.Response:
    r = requests.post(
        f"{GEMINI_API_BASE}/models/{model}:generateContent",
        params={"key": api_key},
        json=body,
        timeout=GEMINI_TIMEOUT,
    )
    if r.status_code in (502, 503):
        raise _TransientGeminiError(r)
    return r


def _build_body(prompt: str, json_mode: bool) -> dict:
    generation_config: Dict[str, Any] = {
        "temperature": 0.2,
        "maxOutputTokens": 4096,
        "topP": 0.9,
        "topK": 40,
    }
    if json_mode:
        generation_config["responseMimeType"] = "application/json"
        generation_config["responseSchema"] = BANNER_JSON_SCHEMA
    return {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": generation_config,
        "safetySettings": SAFETY_SETTINGS,
    }


def _response_text(payload: Any) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    return "\n".join(str(p.get("text")) for p in parts if isinstance(p, dict) and p.get("text")).strip()


def _is_json_mode_rejection(status: int, text: str) -> bool:
    return status == 400 and any(k in text for k in ("responseMimeType", "responseSchema", "INVALID_ARGUMENT"))


@dataclass
class _Outcome:
    parsed: Optional[dict] = None
    error: Optional[str] = None
    json_mode_rejected: bool = False


def _attempt(model: str, prompt: str, api_key: str, json_mode: bool) -> _Outcome:
    """One strategy: a single request (plus one transient retry). Never raises."""
    label = "error" if json_mode else "error (retry)"
    try:
        try:
            r = _post_generate(model, api_key, _build_body(prompt, json_mode))
        except _TransientGeminiError as e:
            r = e.response
        if not r.ok:
            body = r.text or ""
            return _Outcome(
                error=f"Gemini {model} {label}: {r.status_code} - {body[:400]}",
                json_mode_rejected=json_mode and _is_json_mode_rejection(r.status_code, body),
            )
        text = _response_text(r.json())
    except (requests.RequestException, ValueError) as e:
        return _Outcome(error=f"Gemini failed: {e}")
    parsed = coerce_json(text)
    if not isinstance(parsed, dict):
        return _Outcome(error=f"Gemini {model} returned non-JSON: {text[:220]}")
    return _Outcome(parsed=parsed)


def call_gemini_for_json(prompt: str, api_key: str, models: Optional[List[str]] = None) -> dict:
    """Ask the text models for the banner JSON; first parsable object wins.

    Per model: strict schema mode first; only when the API rejects strict mode
    (HTTP 400 about the schema/mime type) the same model is asked again without
    it. Any other failure moves on to the next model.
    """
    last_err: Optional[str] = None
    for model in models or GEMINI_JSON_MODELS:
        outcome = _attempt(model, prompt, api_key, json_mode=True)
        if outcome.json_mode_rejected:
            log.info("gemini %s rejected JSON mode; retrying without it", model)
            outcome = _attempt(model, prompt, api_key, json_mode=False)
        if outcome.parsed is not None:
            return outcome.parsed
        last_err = outcome.error
        log.warning("gemini json attempt failed: %s", (last_err or "")[:200])
    raise GeminiJsonError(last_err or "Gemini failed")


# ---------------- Banner image generation ----------------
def _extract_inline_images(resp) -> List[Tuple[str, bytes]]:
    """Best-effort extraction of inline image bytes from Gemini SDK responses.

    Returns list of (mime, bytes).
    """
    results: List[Tuple[str, bytes]] = []
    candidates = getattr(resp, "candidates", None) or []
    for c in candidates:
        if isinstance(c, dict):
            parts = (c.get("content") or {}).get("parts") or []
        else:
            content = getattr(c, "content", None)
            parts = getattr(content, "parts", []) if content is not None else []
        for p in parts or []:
            inline = p.get("inline_data") if isinstance(p, dict) else getattr(p, "inline_data", None)
            if not inline:
                continue
            mime = (inline.get("mime_type") if isinstance(inline, dict) else getattr(inline, "mime_type", None)) or "image/png"
            data = inline.get("data") if isinstance(inline, dict) else getattr(inline, "data", None)
            if not data:
                continue
            # SDK returns raw bytes; REST-shaped dicts carry base64 text
            if isinstance(data, (bytes, bytearray)):
                results.append((mime, bytes(data)))
            else:
                try:
                    results.append((mime, base64.b64decode(data)))
                except ValueError:
                    continue
    return results


_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,(.+)$", re.DOTALL)


def _data_url_to_part(data_url: str) -> Optional[dict]:
    m = _DATA_URL_RE.match(str(data_url or "").strip())
    if not m:
        return None
    try:
        return {"mime_type": m.group(1), "data": base64.b64decode(m.group(2))}
    except ValueError:
        return None


def get_aspect_ratio(size: str) -> str:
    try:
        w, h = [int(x) for x in str(size).split("x", 1)]
    except ValueError:
        return "1:1"
    if not w or not h:
        return "1:1"
    ratio = w / h
    if ratio > 1.7:
        return "16:9"
    if ratio > 1.4:
        return "3:2"
    if ratio > 1.1:
        return "4:3"
    if ratio < 0.6:
        return "9:16"
    if ratio < 0.75:
        return "2:3"
    if ratio < 0.9:
        return "3:4"
    return "1:1"


PATTERN_LETTERS = "ABCDEFGHIJ"


@dataclass
class BannerGenerationResult:
    banners: List[str] = field(default_factory=list)
    used_model: Optional[str] = None
    error: Optional[str] = None


def is_image_generation_configured() -> bool:
    return bool(get_genai_api_key())


def get_model_display_name(model: str | None) -> str | None:
    if not model:
        return None
    return MODEL_DISPLAY_NAMES.get(model, model)


def _compose_image_prompt(category: str, keyword: str, size: str, options: Dict[str, Any]) -> str:
    lines = [options.get("customImagePrompt") or f"Japanese advertising banner for {keyword} ({category})."]
    lines.append(f"Canvas: {size} pixels, aspect ratio {get_aspect_ratio(size)}. Fill the whole canvas.")
    colors = [c for c in (options.get("brandColors") or []) if c]
    if colors:
        lines.append("Brand colors (use as the main palette): " + ", ".join(colors[:3]))
    if options.get("logoImage"):
        lines.append("A logo image is provided; place it small and legible without distortion.")
    if options.get("personImages"):
        lines.append("A person photo is provided; feature exactly one person naturally.")
    if options.get("negativePrompt"):
        lines.append(f"Avoid: {options['negativePrompt']}")
    if options.get("purpose"):
        lines.append(f"Placement: {options['purpose']}")
    return "\n".join(lines)


def generate_banners(
    category: str,
    keyword: str,
    size: str = "1080x1080",
    options: Optional[Dict[str, Any]] = None,
    count: int = 3,
) -> BannerGenerationResult:
    """Generate ``count`` banner images as data URLs with the Gemini image models.

    Models are tried in order per image; the first one that produces an image
    is preferred for the rest of the batch.
    """
    api_key = get_genai_api_key()
    if not api_key:
        raise BannerGenerationError("GOOGLE_GENAI_API_KEY が設定されていません")
    opts = options or {}
    genai.configure(api_key=api_key)

    media: List[dict] = []
    for src in (opts.get("referenceImages") or [])[:4]:
        part = _data_url_to_part(src)
        if part:
            media.append(part)
    for src in [opts.get("logoImage")] + list(opts.get("personImages") or [])[:1]:
        part = _data_url_to_part(src) if src else None
        if part:
            media.append(part)

    base_prompt = _compose_image_prompt(category, keyword, size, opts)
    similar = opts.get("variationMode") == "similar"
    models = list(BANNER_IMAGE_MODELS)
    banners: List[str] = []
    errors: List[str] = []
    used_model: Optional[str] = None

    for i in range(max(1, int(count))):
        letter = PATTERN_LETTERS[i] if i < len(PATTERN_LETTERS) else str(i + 1)
        variation = (
            f"Variation {letter}: keep the base template, change details only."
            if similar
            else f"Pattern {letter}: make this design clearly different from the other patterns."
        )
        produced = False
        for model_name in models:
            try:
                model = genai.GenerativeModel(model_name)
                out = model.generate_content(media + [f"{base_prompt}\n{variation}"])
                pairs = _extract_inline_images(out)
            except Exception as e:
                errors.append(f"{letter}/{model_name}: {e}")
                continue
            if pairs:
                mime, blob = pairs[0]
                banners.append(_to_data_url(mime or "image/png", blob))
                used_model = model_name
                # keep using the model that worked
                models = [model_name] + [m for m in models if m != model_name]
                produced = True
                break
            errors.append(f"{letter}/{model_name}: no image in response")
        if not produced:
            log.warning("banner pattern %s failed: %s", letter, errors[-1] if errors else "")

    if not banners:
        raise BannerGenerationError("バナー画像の生成に失敗しました。" + (f"（{errors[-1][:200]}）" if errors else ""))
    failed = max(1, int(count)) - len(banners)
    warning = f"⚠️ {failed}件のパターンで生成に失敗しました。" if failed > 0 else None
    return BannerGenerationResult(banners=banners, used_model=used_model, error=warning)
