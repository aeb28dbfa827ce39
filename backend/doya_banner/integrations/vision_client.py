import logging
from typing import Iterable

import requests

log = logging.getLogger(__name__)

VISION_API_BASE = "https://vision.googleapis.com/v1"
VISION_TIMEOUT = 10

PEOPLE_YES = "あり"
PEOPLE_NO = "なし"
PEOPLE_UNKNOWN = "不明"


def detect_people(image_urls: Iterable[str], api_key: str | None) -> str:
    """Face detection over up to 3 image URLs.

    あり if any face is found, なし if the call succeeds without faces,
    不明 when there is no key, no URL, or the call fails.
    """
    if not api_key:
        return PEOPLE_UNKNOWN
    urls = list(dict.fromkeys(u for u in image_urls if u))[:3]
    if not urls:
        return PEOPLE_UNKNOWN

    body = {
        "requests": [
            {
                "image": {"source": {"imageUri": u}},
                "features": [{"type": "FACE_DETECTION", "maxResults": 3}],
            }
            for u in urls
        ]
    }
    try:
        r = requests.post(
            f"{VISION_API_BASE}/images:annotate",
            params={"key": api_key},
            json=body,
            timeout=VISION_TIMEOUT,
        )
        if not r.ok:
            log.info("vision face detection returned %s", r.status_code)
            return PEOPLE_UNKNOWN
        payload = r.json()
    except Exception as e:
        log.info("vision face detection failed: %s", type(e).__name__)
        return PEOPLE_UNKNOWN

    responses = payload.get("responses") if isinstance(payload, dict) else None
    for item in responses or []:
        faces = (item or {}).get("faceAnnotations") if isinstance(item, dict) else None
        if isinstance(faces, list) and faces:
            return PEOPLE_YES
    return PEOPLE_NO
