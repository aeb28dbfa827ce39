from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, ConfigDict, Field, AliasChoices
from typing import Any, List, Optional
from uuid import uuid4
from datetime import datetime, timedelta, timezone
import asyncio
import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from doya_banner import db
from doya_banner.auth import get_session_user
from doya_banner.config import CORS_ALLOW_ORIGINS, get_genai_api_key, is_production, limits_disabled
from doya_banner.extractors import extract_color_hints, extract_palette_from_css, is_valid_http_url, safe_trim
from doya_banner.integrations.gemini_client import (
    BannerGenerationError,
    GeminiJsonError,
    PATTERN_LETTERS,
    call_gemini_for_json,
    generate_banners,
    get_model_display_name,
    is_image_generation_configured,
)
from doya_banner.integrations.headless import extract_palette_via_headless_computed_styles
from doya_banner.integrations.site_client import SiteFetchError, fetch_html
from doya_banner.palette import HEADLESS_PALETTE_TTL, HEADLESS_VISUAL_TTL, TTLCache, fuse_palettes
from doya_banner.pipeline import (
    build_generation_options,
    build_prompt_input,
    collect_reference_images,
    collect_site_signals,
    legacy_analysis_json,
)
from doya_banner.pricing import (
    get_banner_history_days,
    get_banner_monthly_limit_by_user_plan,
    get_current_month_jst,
    get_free_hour_remaining,
    is_within_free_hour,
    should_reset_monthly_usage,
)
from doya_banner.prompts import build_website_banner_prompt
from doya_banner.usage import (
    GUEST_COOKIE_MAX_AGE,
    GUEST_USAGE_COOKIE,
    GateResult,
    UsageInfo,
    check_guest_quota,
    check_user_quota,
    encode_guest_cookie,
    read_guest_usage,
    record_usage,
    resolve_generation_request,
)

app = FastAPI(title="Doya Banner", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1024)

# Basic logger for diagnostics (stdout captured by the container runtime)
logger = logging.getLogger("doya_banner.api")
if not logger.handlers:
    logger.addHandler(logging.StreamHandler())
logger.setLevel(logging.INFO)

# Process-wide, hostname keyed
HEADLESS_VISUAL_CACHE: TTLCache = TTLCache(HEADLESS_VISUAL_TTL)
HEADLESS_PALETTE_CACHE: TTLCache = TTLCache(HEADLESS_PALETTE_TTL)

INVALID_URL_ERROR = "URLが不正です（https://〜 を入力してください）"
NOT_CONFIGURED_ERROR = "バナー生成APIが設定されていません。管理者にお問い合わせください。"
EMPTY_PROMPT_ERROR = "サイト解析はできましたが、画像生成プロンプトの生成に失敗しました。"
GENERIC_ERROR = "URLからの自動生成に失敗しました"
HISTORY_ERROR = "履歴の取得に失敗しました"
HISTORY_UPGRADE_MESSAGE = "履歴機能は有料プラン限定です。プランをアップグレードしてください。"
# rows fetched per requested batch (a batch holds at most 10 images)
HISTORY_ROWS_PER_BATCH = 12


def _json(body: dict, status_code: int = 200) -> Response:
    return Response(
        content=json.dumps(body, ensure_ascii=False),
        media_type="application/json",
        status_code=status_code,
    )


def _drop_none(d: dict) -> dict:
    return {k: v for k, v in d.items() if v is not None}


def _alias(*names: str):
    return Field(default=None, validation_alias=AliasChoices(*names))


def _opt_str(v: Any) -> Optional[str]:
    return v if isinstance(v, str) and v else None


def _str_list(v: Any) -> Optional[List[str]]:
    if not isinstance(v, list):
        return None
    return [x for x in v if isinstance(x, str) and x]


class FromUrlRequest(BaseModel):
    # Older clients send camelCase, newer ones snake_case. Values are coerced
    # in the handler and a wrongly typed field reads as absent.
    model_config = ConfigDict(extra="ignore")

    target_url: Any = _alias("target_url", "targetUrl")
    base_image: Any = _alias("base_image", "baseImage")
    size: Any = None
    industry: Any = None
    purpose: Any = None
    logo_image: Any = _alias("logo_image", "logoImage")
    person_images: Any = _alias("person_images", "personImages")
    main_color: Any = _alias("main_color", "mainColor")
    sub_color: Any = _alias("sub_color", "subColor")
    tone_keywords: Any = _alias("tone_keywords", "toneKeywords")
    avoid: Any = None
    must_include: Any = _alias("must_include", "mustInclude")
    reference_images: Any = _alias("reference_images", "referenceImages")
    brand_colors: Any = _alias("brand_colors", "brandColors")
    count: Any = None
    share_to_gallery: Any = _alias("share_to_gallery", "shareToGallery")
    share_profile: Any = _alias("share_profile", "shareProfile")


class PaletteRequest(BaseModel):
    target_url: Any = _alias("target_url", "targetUrl")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Body that is not a JSON object at all
    logger.info("rejected request body on %s: %s", request.url.path, exc.errors()[:1])
    return _json({"error": INVALID_URL_ERROR}, 400)


@app.get("/health")
async def health():
    return {"ok": True}


def _history_rows(
    images: List[str],
    *,
    category: str,
    keyword: str,
    size: str,
    purpose: str,
    count: int,
    target_url: str,
    used_model: str | None,
    shared: bool,
    share_profile: bool,
) -> List[dict]:
    batch_id = str(uuid4())
    now_iso = datetime.now(timezone.utc).isoformat()
    rows = []
    for idx, img in enumerate(images):
        metadata = {
            "batchId": batch_id,
            "category": category,
            "purpose": purpose,
            "size": size,
            "keyword": keyword,
            "targetUrl": target_url,
            "bannerPurpose": "auto",
            "pattern": PATTERN_LETTERS[idx] if idx < len(PATTERN_LETTERS) else str(idx + 1),
            "usedModel": used_model,
            "shared": shared,
        }
        if shared:
            metadata["sharedAt"] = now_iso
            metadata["shareProfile"] = share_profile
        rows.append({
            "input": {
                "category": category,
                "keyword": keyword,
                "size": size,
                "purpose": purpose,
                "count": count,
                "source": "url",
                "targetUrl": target_url,
                "bannerPurpose": "auto",
            },
            "output": img,
            "output_type": "IMAGE",
            "metadata": metadata,
        })
    return rows


@app.post("/api/banner/from-url")
async def api_banner_from_url(req: FromUrlRequest, request: Request):
    user = get_session_user(request)
    is_guest = user is None
    plan = "GUEST" if is_guest else user.plan
    is_paid = not is_guest and plan != "FREE"
    free_hour = not is_guest and is_within_free_hour(user.first_login_at)

    target_url = safe_trim(req.target_url, 2000)
    base_image = req.base_image if isinstance(req.base_image, str) and req.base_image.startswith("data:image/") else None
    category = safe_trim(req.industry, 40) or "other"
    purpose = safe_trim(req.purpose, 32) or "sns_ad"
    count, size = resolve_generation_request(req.count, safe_trim(req.size, 32) or "1080x1080", is_paid or free_hour)
    logo_image = _opt_str(req.logo_image)
    person_images = _str_list(req.person_images)

    if not target_url or not is_valid_http_url(target_url):
        return _json({"error": INVALID_URL_ERROR}, 400)
    if not is_image_generation_configured():
        return _json({"error": NOT_CONFIGURED_ERROR}, 503)

    # Quota gate runs before any fetch or paid call
    current_month = get_current_month_jst()
    gate = GateResult(allowed=True)
    if not limits_disabled():
        if is_guest:
            gate = check_guest_quota(request.cookies.get(GUEST_USAGE_COOKIE), count, current_month)
        else:
            try:
                gate = await asyncio.to_thread(check_user_quota, user, count, free_hour)
            except SQLAlchemyError as e:
                logger.error("from-url quota lookup failed: %s", e)
                return _json({"error": GENERIC_ERROR}, 500)
        if not gate.allowed:
            logger.info("banner quota reached plan=%s used=%s", plan, gate.usage.monthly_used if gate.usage else None)
            return _json(gate.error or {}, 429)

    try:
        status, html = await asyncio.to_thread(fetch_html, target_url)
    except SiteFetchError as e:
        return _json({"error": f"URLの取得に失敗しました（{str(e) or 'timeout'}）"}, 400)
    if not 200 <= status < 300:
        return _json({"error": f"URLの取得に失敗しました（status={status}）"}, 400)

    try:
        signals = await collect_site_signals(html, target_url, visual_cache=HEADLESS_VISUAL_CACHE)
        prompt = build_website_banner_prompt(
            build_prompt_input(
                signals,
                target_url=target_url,
                size=size,
                logo_image=logo_image,
                person_images=len(person_images or []),
                main_color=_opt_str(req.main_color),
                sub_color=_opt_str(req.sub_color),
                tone_keywords=_opt_str(req.tone_keywords),
                avoid=_opt_str(req.avoid),
                must_include=_opt_str(req.must_include),
            )
        )
        structured = await asyncio.to_thread(call_gemini_for_json, prompt, get_genai_api_key())
        banner_analysis = safe_trim(structured.get("banner_analysis"), 6000)
        image_prompt = safe_trim(structured.get("image_generation_prompt"), 24000)
        negative_prompt = safe_trim(structured.get("negative_prompt"), 6000)
        if not image_prompt:
            return _json({"error": EMPTY_PROMPT_ERROR}, 500)

        auto_refs = await asyncio.to_thread(collect_reference_images, signals)
        options = build_generation_options(
            signals,
            image_prompt=image_prompt,
            negative_prompt=negative_prompt,
            purpose=purpose,
            auto_references=auto_refs,
            base_image=base_image,
            logo_image=logo_image,
            person_images=person_images,
            reference_images=_str_list(req.reference_images),
            brand_colors=_str_list(req.brand_colors),
        )
        # keyword is only for history/meta; the custom prompt drives the image
        keyword = safe_trim(signals.meta.get("title"), 80) or "URL自動生成"
        result = await asyncio.to_thread(generate_banners, category, keyword, size, options, count)
    except (GeminiJsonError, BannerGenerationError) as e:
        logger.warning("from-url generation failed for %s: %s", target_url.split("?", 1)[0], e)
        return _json({"error": str(e) or GENERIC_ERROR}, 500)
    except Exception as e:
        logger.exception("from-url error: %s", type(e).__name__)
        return _json({"error": GENERIC_ERROR}, 500)

    images = [b for b in result.banners if isinstance(b, str) and b.startswith("data:image/")]

    if user is not None and images:
        rows = _history_rows(
            images,
            category=category,
            keyword=keyword,
            size=size,
            purpose=purpose,
            count=count,
            target_url=target_url,
            used_model=result.used_model,
            shared=req.share_to_gallery is True,
            share_profile=req.share_profile is True,
        )
        try:
            await asyncio.to_thread(db.create_generations, user.user_id, rows)
        except SQLAlchemyError as e:
            logger.error("from-url history persist failed: %s", e)

    charged = max(1, min(count, len(images)))
    guest_usage = None
    if not limits_disabled():
        guest_usage = await asyncio.to_thread(record_usage, gate, charged, user=user, current_month=current_month)

    body = _drop_none({
        "banners": result.banners,
        "bannerAnalysis": banner_analysis or None,
        "analysisJson": _drop_none(legacy_analysis_json(banner_analysis)),
        "imagePrompt": image_prompt,
        "negativePrompt": negative_prompt,
        "usedModel": result.used_model,
        "usedModelDisplay": get_model_display_name(result.used_model),
        "usage": gate.usage.to_dict() if gate.usage else None,
        "warning": result.error,
    })
    res = _json(body)
    if guest_usage is not None:
        res.set_cookie(
            GUEST_USAGE_COOKIE,
            encode_guest_cookie(guest_usage),
            max_age=GUEST_COOKIE_MAX_AGE,
            path="/",
            httponly=True,
            samesite="lax",
            secure=is_production(),
        )
    return res


@app.post("/api/banner/palette")
async def api_banner_palette(req: PaletteRequest):
    """Brand palette preview: no generation and no quota charge."""
    target_url = safe_trim(req.target_url, 2000)
    if not target_url or not is_valid_http_url(target_url):
        return _json({"error": INVALID_URL_ERROR}, 400)
    html = ""
    try:
        status, text = await asyncio.to_thread(fetch_html, target_url)
        if 200 <= status < 300:
            html = text
    except SiteFetchError as e:
        logger.info("palette preview fetch failed: %s", e)
    headless = await extract_palette_via_headless_computed_styles(target_url, cache=HEADLESS_PALETTE_CACHE)
    css = extract_palette_from_css(html)
    return {
        "palette": fuse_palettes(headless, css),
        "cssPalette": css,
        "hints": extract_color_hints(html),
    }


@app.get("/api/banner/usage")
async def api_banner_usage(request: Request):
    user = get_session_user(request)
    if user is None:
        guest = read_guest_usage(request.cookies.get(GUEST_USAGE_COOKIE), get_current_month_jst())
        usage = UsageInfo(monthly_limit=get_banner_monthly_limit_by_user_plan("GUEST"), monthly_used=guest.count)
        return {
            "plan": "GUEST",
            "isGuest": True,
            "usage": usage.to_dict(),
            "freeHourActive": False,
            "freeHourRemainingSeconds": 0,
        }

    try:
        sub = await asyncio.to_thread(db.get_service_subscription, user.user_id)
    except SQLAlchemyError as e:
        logger.error("usage lookup failed: %s", e)
        return _json({"error": "利用状況の取得に失敗しました"}, 500)
    used = int(sub["monthly_usage"]) if sub else 0
    if should_reset_monthly_usage(sub["last_usage_reset"] if sub else None):
        used = 0
    usage = UsageInfo(monthly_limit=get_banner_monthly_limit_by_user_plan(user.plan), monthly_used=used)
    return {
        "plan": user.plan,
        "isGuest": False,
        "usage": usage.to_dict(),
        "freeHourActive": is_within_free_hour(user.first_login_at),
        "freeHourRemainingSeconds": get_free_hour_remaining(user.first_login_at),
    }


def _history_batches(rows: List[dict], take: int, include_images: bool = True) -> List[dict]:
    """Group newest-first history rows into generation batches.

    Rows without a batch id fall back to a minute|keyword|size key.
    """
    batches: dict = {}
    for r in rows:
        meta = r.get("metadata") or {}
        inp = r.get("input") or {}
        keyword = str(inp.get("keyword") or meta.get("keyword") or "")
        size = str(inp.get("size") or meta.get("size") or "")
        created_at = r.get("created_at") or ""
        batch_id = meta.get("batchId") if isinstance(meta.get("batchId"), str) else ""
        key = batch_id or f"{created_at[:16]}|{keyword}|{size}"
        output = r.get("output")
        cur = batches.get(key)
        if cur is None:
            batches[key] = {
                "id": key,
                "category": str(inp.get("category") or meta.get("category") or ""),
                "keyword": keyword,
                "size": size,
                "purpose": str(inp.get("purpose") or meta.get("purpose") or ""),
                "createdAt": created_at,
                "banners": [output] if include_images and isinstance(output, str) else [],
                "bannerCount": 1,
            }
            continue
        cur["bannerCount"] += 1
        if include_images and isinstance(output, str):
            cur["banners"].append(output)
        if created_at > cur["createdAt"]:
            cur["createdAt"] = created_at
    items = sorted(batches.values(), key=lambda b: b["createdAt"], reverse=True)
    return items[:take]


def _as_take(v: Any) -> int:
    try:
        return int(v) if v is not None else 20
    except (TypeError, ValueError):
        return 20


@app.get("/api/banner/history")
async def api_banner_history(request: Request, take: Optional[str] = None, images: str = "1"):
    user = get_session_user(request)
    if user is None:
        return _json({"error": "unauthorized"}, 401)

    take_n = max(1, min(50, _as_take(take)))
    try:
        is_pro = user.plan != "FREE" or is_within_free_hour(user.first_login_at)
        if not is_pro:
            sub = await asyncio.to_thread(db.get_service_subscription, user.user_id)
            is_pro = bool(sub) and str(sub.get("plan") or "FREE").upper() != "FREE"
        days = get_banner_history_days(is_pro)
        if days == 0:
            return {"items": [], "message": HISTORY_UPGRADE_MESSAGE, "requiresUpgrade": True}
        since = datetime.utcnow() - timedelta(days=days)
        rows = await asyncio.to_thread(
            db.list_generations,
            user.user_id,
            take_n * HISTORY_ROWS_PER_BATCH,
            since=since,
            output_type="IMAGE",
        )
    except SQLAlchemyError as e:
        logger.error("banner history failed: %s", e)
        return _json({"error": HISTORY_ERROR}, 500)
    return {"items": _history_batches(rows, take_n, include_images=images != "0")}
