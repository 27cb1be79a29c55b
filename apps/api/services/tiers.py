"""Subscription tier profiles and the static cost table."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from config import settings


DEFAULT_TIER = "free"
MICROS_PER_USD = 1_000_000


@dataclass(frozen=True)
class WindowCeilings:
    """Per-window ceilings; ``None`` means the window is counted but not capped."""

    hourly: Optional[int] = None
    daily: Optional[int] = None
    monthly: Optional[int] = None

    def get(self, window: str) -> Optional[int]:
        return getattr(self, window)


@dataclass(frozen=True)
class TierProfile:
    name: str
    spend_ceilings: WindowCeilings
    rate_ceilings: Dict[str, WindowCeilings] = field(default_factory=dict)
    collection_max: Optional[int] = None
    needs_credits: bool = True
    max_image_bytes: int = 200_000
    streak_freezes: int = 0
    full_analysis_allowed: bool = False


def usd_to_micros(amount: float) -> int:
    return int(round(float(amount) * MICROS_PER_USD))


def micros_to_usd(amount: int) -> float:
    return round(int(amount or 0) / MICROS_PER_USD, 6)


def normalize_tier(tier: Optional[str]) -> str:
    value = str(tier or "").strip().lower()
    return value if value in settings.SPEND_LIMITS else DEFAULT_TIER


def get_tier_profile(tier: Optional[str]) -> TierProfile:
    """Resolve a tier name to its profile; unknown tiers fall back to free."""
    name = normalize_tier(tier)
    spend = settings.SPEND_LIMITS[name]
    rate_limits = settings.RATE_LIMITS.get(name) or settings.RATE_LIMITS.get(DEFAULT_TIER, {})
    return TierProfile(
        name=name,
        spend_ceilings=WindowCeilings(
            hourly=usd_to_micros(spend["hourly"]),
            daily=usd_to_micros(spend["daily"]),
            monthly=usd_to_micros(spend["monthly"]),
        ),
        rate_ceilings={
            action: WindowCeilings(hourly=limits.get("hourly"), daily=limits.get("daily"))
            for action, limits in rate_limits.items()
        },
        collection_max=settings.COLLECTION_LIMITS.get(name),
        needs_credits=name in settings.CREDIT_METERED_TIERS,
        max_image_bytes=int(settings.IMAGE_SIZE_LIMITS.get(name, settings.IMAGE_SIZE_LIMITS[DEFAULT_TIER])),
        streak_freezes=int(settings.STREAK_FREEZES.get(name, 0)),
        full_analysis_allowed=name in settings.FULL_ANALYSIS_TIERS,
    )


def global_spend_ceilings() -> WindowCeilings:
    limits = settings.GLOBAL_SPEND_LIMITS
    return WindowCeilings(
        hourly=usd_to_micros(limits["hourly"]) if limits.get("hourly") is not None else None,
        daily=usd_to_micros(limits["daily"]) if limits.get("daily") is not None else None,
    )


def emergency_ceiling_micros() -> int:
    return usd_to_micros(settings.GLOBAL_SPEND_LIMITS["emergency"])


def estimate_cost_micros(operation_type: str) -> int:
    """Fixed estimate used to bound worst-case spend before the call happens."""
    cost = settings.OPERATION_COSTS.get(operation_type, settings.DEFAULT_OPERATION_COST)
    return usd_to_micros(cost)


def credit_cost(operation: str) -> int:
    return max(int(settings.CREDIT_COSTS.get(operation, 1)), 0)
