"""Per-user request-count limits by action type and tier."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.quota_window import RateWindow
from services.errors import RateLimitExceeded
from services.query_budget import QueryBudget, track
from services.quota_windows import (
    consume,
    effective_snapshot,
    ensure_window_row,
    exceeded_window,
    read_window,
    seconds_until_reset,
)
from services.spend_governor import TRACKING_ERRORS, rollback_after_tracking_failure
from services.tiers import WindowCeilings, get_tier_profile

logger = logging.getLogger(__name__)

UNLIMITED = WindowCeilings()


@dataclass
class RateAuthorization:
    allowed: bool
    action_type: str
    tracked: bool = True

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def authorize_action(
    user_id: str,
    action_type: str,
    tier: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> RateAuthorization:
    """Count one request, or raise RateLimitExceeded without counting it.

    Actions with no configured ceiling for the tier are counted but never rejected.
    """
    current_time = now if now is not None else time.time()
    profile = get_tier_profile(tier)
    ceilings = profile.rate_ceilings.get(action_type, UNLIMITED)
    keys = {"user_id": user_id, "action_type": action_type}
    track(budget, "write", "rate_windows")

    try:
        await ensure_window_row(db, RateWindow, keys)
        allowed = await consume(db, RateWindow, keys, 1, ceilings, now=current_time)
        if allowed:
            await db.commit()
            snapshot = None
        else:
            snapshot = await read_window(db, RateWindow, keys, now=current_time)
            await db.rollback()
    except TRACKING_ERRORS:
        logger.exception("Rate limit check failed for user %s (allowing request)", user_id)
        await rollback_after_tracking_failure(db)
        return RateAuthorization(allowed=True, action_type=action_type, tracked=False)

    if snapshot is not None:
        window = exceeded_window(snapshot, 1, ceilings) or "hourly"
        logger.info("rate_limited user=%s tier=%s action=%s window=%s", user_id, profile.name, action_type, window)
        raise RateLimitExceeded(
            action_type,
            window,
            int(ceilings.get(window) or 0),
            seconds_until_reset(snapshot, window, current_time),
        )

    return RateAuthorization(allowed=True, action_type=action_type)


async def get_rate_status(
    user_id: str,
    tier: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Usage, limits and remaining requests for every action configured on the tier."""
    current_time = now if now is not None else time.time()
    profile = get_tier_profile(tier)
    track(budget, "read", "rate_windows")
    result = await db.execute(
        select(
            RateWindow.action_type,
            RateWindow.hourly,
            RateWindow.daily,
            RateWindow.monthly,
            RateWindow.last_hour_reset,
            RateWindow.last_day_reset,
            RateWindow.last_month_reset,
        ).where(RateWindow.user_id == user_id)
    )
    rows = {row.action_type: row for row in result.all()}

    usage: Dict[str, Any] = {}
    remaining: Dict[str, Any] = {}
    for action_type, ceilings in profile.rate_ceilings.items():
        snapshot = effective_snapshot(rows.get(action_type), current_time)
        usage[action_type] = {
            "hourly": snapshot.hourly,
            "daily": snapshot.daily,
            "limits": {"hourly": ceilings.hourly, "daily": ceilings.daily},
        }
        remaining[action_type] = {
            window: max(int(ceilings.get(window)) - snapshot.value(window), 0)
            for window in ("hourly", "daily")
            if ceilings.get(window) is not None
        }
    return {"usage": usage, "remaining": remaining}
