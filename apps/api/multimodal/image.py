import base64
import binascii
import re
from dataclasses import dataclass

from fastapi import HTTPException

from services.tiers import get_tier_profile

MIN_IMAGE_BYTES = 100
_DATA_URL = re.compile(r"^data:image/[^;]+;base64,(.+)$", re.DOTALL)
_BASE64 = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


@dataclass
class NormalizedImage:
    encoded: str  # base64 without any data URL prefix
    size_bytes: int


def normalize_image(image_data: str, tier: str) -> NormalizedImage:
    """Strip a data URL prefix, validate base64 and enforce the tier's size limit."""
    if not image_data or not isinstance(image_data, str):
        raise HTTPException(status_code=422, detail="Image data is required")

    cleaned = image_data.strip()
    if cleaned.startswith("data:"):
        match = _DATA_URL.match(cleaned)
        if not match:
            raise HTTPException(status_code=422, detail="Invalid data URL format")
        cleaned = match.group(1)

    if not _BASE64.match(cleaned):
        raise HTTPException(status_code=422, detail="Invalid base64 encoding")
    try:
        raw = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail="Invalid base64 encoding")

    limit = get_tier_profile(tier).max_image_bytes
    if len(raw) > limit:
        raise HTTPException(
            status_code=422,
            detail=f"Image too large. Max size: {limit // 1000}KB for your tier",
        )
    if len(raw) < MIN_IMAGE_BYTES:
        raise HTTPException(status_code=422, detail="Image too small or corrupted")

    return NormalizedImage(encoded=cleaned, size_bytes=len(raw))
