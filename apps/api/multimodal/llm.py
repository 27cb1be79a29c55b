import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

from openai import OpenAI

from config import settings
from .models import CrystalAnalysis, CrystalIdentification, MetaphysicalProperties

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = (
    "Analyze crystal. JSON only:\n"
    '{"identification":{"name":"string","variety":"string","confidence":0-100},'
    '"description":"string (max 150 chars)",'
    '"metaphysical_properties":{"healing_properties":["string"],"primary_chakras":["string"],'
    '"energy_type":"grounding|energizing|calming","element":"earth|air|fire|water"},'
    '"care_instructions":{"cleansing":["method"],"charging":["method"]}}'
)

_MOCK_CRYSTALS = (
    ("Amethyst", "Chevron", ["Calm", "Intuition"], ["Crown", "Third Eye"], "calming", "air"),
    ("Clear Quartz", "Lemurian", ["Clarity", "Amplification"], ["Crown"], "energizing", "fire"),
    ("Black Tourmaline", "Schorl", ["Protection", "Grounding"], ["Root"], "grounding", "earth"),
    ("Rose Quartz", None, ["Compassion", "Self-love"], ["Heart"], "calming", "water"),
)


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key, timeout=settings.ANALYSIS_TIMEOUT_SECONDS)


def normalize_confidence(value: Any) -> float:
    """Models answer either 0-1 or 0-100."""
    if not isinstance(value, (int, float)):
        return 0.0
    value = float(value)
    return value / 100 if value > 1 else value


def price_completion(model: str, usage: Any) -> Optional[float]:
    pricing = settings.MODEL_PRICING.get(model)
    if not pricing or usage is None:
        return None
    prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
    completion_tokens = getattr(usage, "completion_tokens", 0) or 0
    return (prompt_tokens * pricing["input"] + completion_tokens * pricing["output"]) / 1_000_000


def _mock_analysis(image_b64: str, model: str, analysis_type: str) -> CrystalAnalysis:
    digest = hashlib.sha256(image_b64[:500].encode("utf-8")).digest()
    name, variety, healing, chakras, energy, element = _MOCK_CRYSTALS[digest[0] % len(_MOCK_CRYSTALS)]
    return CrystalAnalysis(
        identification=CrystalIdentification(name=name, variety=variety, confidence=0.72),
        description=f"Local fallback identification: likely {name}.",
        metaphysical_properties=MetaphysicalProperties(
            healing_properties=healing,
            primary_chakras=chakras,
            energy_type=energy,
            element=element,
        ),
        care_instructions={"cleansing": ["Moonlight"], "charging": ["Sound bath"]},
        model=model,
        analysis_type=analysis_type,
        estimated_cost=0.0,
        latency_ms=0,
    )


def analyze_crystal(image_b64: str, *, model: str, analysis_type: str, api_key: str) -> CrystalAnalysis:
    """
    Identify a crystal from a base64 JPEG with a vision model.

    Falls back to a deterministic local analysis when no API key is set, so
    the service and its tests run without credentials.
    """
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using MOCK crystal analysis.")
        return _mock_analysis(image_b64, model, analysis_type)

    started = time.perf_counter()
    response = client.chat.completions.create(
        model=model,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": ANALYSIS_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}},
                ],
            }
        ],
        response_format={"type": "json_object"},
        max_tokens=settings.ANALYSIS_MAX_TOKENS,
        temperature=0.4,
    )
    latency_ms = int((time.perf_counter() - started) * 1000)

    content = response.choices[0].message.content or ""
    try:
        data: Dict[str, Any] = json.loads(content)
    except json.JSONDecodeError:
        logger.error("Crystal analysis returned non-JSON content (%s chars)", len(content))
        raise

    identification = data.get("identification") or {}
    return CrystalAnalysis(
        identification=CrystalIdentification(
            name=str(identification.get("name") or "Unknown"),
            variety=identification.get("variety"),
            confidence=normalize_confidence(identification.get("confidence")),
        ),
        description=str(data.get("description") or "")[:150],
        metaphysical_properties=MetaphysicalProperties(**(data.get("metaphysical_properties") or {})),
        care_instructions=data.get("care_instructions") or {},
        model=model,
        analysis_type=analysis_type,
        estimated_cost=price_completion(model, getattr(response, "usage", None)),
        latency_ms=latency_ms,
    )
