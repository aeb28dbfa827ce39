import logging
from typing import Tuple

import requests

from doya_banner.config import USER_AGENT

log = logging.getLogger(__name__)

PAGE_FETCH_TIMEOUT = 12


class SiteFetchError(RuntimeError):
    pass


def _redact_url(url: str) -> str:
    """Remove query parameters to avoid leaking tokens in logs."""
    try:
        return url.split("?", 1)[0]
    except Exception:
        return url


def fetch_html(url: str, timeout: float = PAGE_FETCH_TIMEOUT) -> Tuple[int, str]:
    """GET the page once with a hard timeout. Returns (status, body text)."""
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml",
    }
    try:
        r = requests.get(url, headers=headers, timeout=timeout, allow_redirects=True)
    except requests.Timeout as e:
        raise SiteFetchError("timeout") from e
    except requests.RequestException as e:
        log.info("page fetch failed for %s: %s", _redact_url(url), e)
        raise SiteFetchError(str(e) or "request failed") from e
    # requests falls back to ISO-8859-1 for text/html without charset; prefer sniffing
    if r.encoding and r.encoding.lower() == "iso-8859-1":
        r.encoding = r.apparent_encoding
    return r.status_code, r.text


def fetch_bytes(url: str, timeout: float = 7) -> Tuple[str, bytes] | None:
    """Best-effort binary download; None on any failure or non-2xx status."""
    try:
        r = requests.get(
            url,
            headers={"User-Agent": "Mozilla/5.0 (compatible; DoyaBannerAI/1.0)"},
            timeout=timeout,
            allow_redirects=True,
        )
        if not r.ok:
            return None
        mime = r.headers.get("content-type") or "application/octet-stream"
        return mime, r.content
    except Exception:
        return None
