"""Spend governor: bound estimated AI spend per user tier and globally.

Estimated costs come from a static table so the worst case is bounded before
the expensive call happens. Ceiling breaches fail closed; failures of the
tracking store itself fail open, because cost tracking is a safety net and
not a dependency of the user-facing operation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.quota_window import SpendWindow
from models.spend_record import SpendRecord
from services.errors import EmergencyStop, GlobalSpendCeilingExceeded, MeteringError, SpendCeilingExceeded
from services.query_budget import QueryBudget, track
from services.quota_windows import (
    WINDOWS,
    consume,
    ensure_window_row,
    exceeded_window,
    read_window,
    seconds_until_reset,
)
from services.tiers import (
    emergency_ceiling_micros,
    estimate_cost_micros,
    get_tier_profile,
    global_spend_ceilings,
    micros_to_usd,
    usd_to_micros,
)

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"
TRACKING_ERRORS = (SQLAlchemyError, OSError)


@dataclass
class SpendAuthorization:
    allowed: bool
    operation_type: str
    estimated_cost: float
    tracked: bool = True

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


async def rollback_after_tracking_failure(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except TRACKING_ERRORS:
        logger.warning("Rollback after tracking failure also failed", exc_info=True)


async def authorize_spend(
    user_id: str,
    operation_type: str,
    tier: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> SpendAuthorization:
    """Reserve the estimated cost against the user's and the global windows.

    Raises SpendCeilingExceeded, GlobalSpendCeilingExceeded or EmergencyStop
    with every counter left untouched.
    """
    current_time = now if now is not None else time.time()
    profile = get_tier_profile(tier)
    cost = estimate_cost_micros(operation_type)
    track(budget, "write", "spend_windows")
    track(budget, "write", "spend_windows")

    try:
        rejection = await _commit_spend(db, user_id, cost, profile.spend_ceilings, current_time)
    except TRACKING_ERRORS:
        logger.exception("Spend check failed for user %s (allowing request)", user_id)
        await rollback_after_tracking_failure(db)
        return SpendAuthorization(
            allowed=True,
            operation_type=operation_type,
            estimated_cost=micros_to_usd(cost),
            tracked=False,
        )

    if rejection is not None:
        raise rejection

    logger.info(
        "spend_authorized user=%s tier=%s operation=%s cost=%.4f",
        user_id,
        profile.name,
        operation_type,
        micros_to_usd(cost),
    )
    return SpendAuthorization(allowed=True, operation_type=operation_type, estimated_cost=micros_to_usd(cost))


async def _commit_spend(db: AsyncSession, user_id: str, cost: int, ceilings, now: float) -> Optional[MeteringError]:
    scope = user_scope(user_id)
    await ensure_window_row(db, SpendWindow, {"scope": scope})
    await ensure_window_row(db, SpendWindow, {"scope": GLOBAL_SCOPE})

    user_ok = await consume(
        db,
        SpendWindow,
        {"scope": scope},
        cost,
        ceilings,
        now=now,
        extra_values={"total": SpendWindow.total + cost},
    )
    if not user_ok:
        snapshot = await read_window(db, SpendWindow, {"scope": scope}, now=now)
        await db.rollback()
        window = exceeded_window(snapshot, cost, ceilings) or "hourly"
        logger.info("spend_rejected user=%s window=%s", user_id, window)
        return SpendCeilingExceeded(
            window,
            micros_to_usd(ceilings.get(window)),
            seconds_until_reset(snapshot, window, now),
        )

    emergency = emergency_ceiling_micros()
    global_ceilings = global_spend_ceilings()
    global_ok = await consume(
        db,
        SpendWindow,
        {"scope": GLOBAL_SCOPE},
        cost,
        global_ceilings,
        now=now,
        extra_values={"total": SpendWindow.total + cost},
        extra_conditions=[SpendWindow.total + cost <= emergency],
    )
    if not global_ok:
        total_result = await db.execute(select(SpendWindow.total).where(SpendWindow.scope == GLOBAL_SCOPE))
        total = int(total_result.scalar_one_or_none() or 0)
        snapshot = await read_window(db, SpendWindow, {"scope": GLOBAL_SCOPE}, now=now)
        await db.rollback()
        if total + cost > emergency:
            logger.critical(
                "EMERGENCY STOP: global spend $%.2f reached the $%.2f emergency ceiling",
                micros_to_usd(total),
                micros_to_usd(emergency),
            )
            return EmergencyStop()
        window = exceeded_window(snapshot, cost, global_ceilings) or "hourly"
        logger.warning("Global %s spending ceiling reached; rejecting user %s", window, user_id)
        return GlobalSpendCeilingExceeded(window, seconds_until_reset(snapshot, window, now))

    await db.commit()
    return None


async def _mark_alert(db: AsyncSession, scope: str, stamp_column, window_start: float, now: float) -> bool:
    """Stamp the alert unless it was already sent since the window last reset."""
    result = await db.execute(
        update(SpendWindow)
        .where(
            SpendWindow.scope == scope,
            or_(stamp_column.is_(None), stamp_column < window_start),
        )
        .values({stamp_column.key: now})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def check_spend_alerts(
    user_id: str,
    tier: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> List[str]:
    """Raise each 80%-of-ceiling alert at most once per window; never blocks."""
    current_time = now if now is not None else time.time()
    profile = get_tier_profile(tier)
    threshold = float(settings.SPEND_ALERT_THRESHOLD)
    global_ceilings = global_spend_ceilings()
    targets = (
        (user_scope(user_id), "daily", SpendWindow.daily_alert_sent_at, profile.spend_ceilings.daily),
        (user_scope(user_id), "monthly", SpendWindow.monthly_alert_sent_at, profile.spend_ceilings.monthly),
        (GLOBAL_SCOPE, "daily", SpendWindow.daily_alert_sent_at, global_ceilings.daily),
    )
    track(budget, "update", "spend_windows")

    alerts: List[str] = []
    try:
        snapshots = {}
        for scope, window, stamp_column, ceiling in targets:
            if not ceiling:
                continue
            if scope not in snapshots:
                snapshots[scope] = await read_window(db, SpendWindow, {"scope": scope}, now=current_time)
            snapshot = snapshots[scope]
            ratio = snapshot.value(window) / ceiling
            if ratio < threshold:
                continue
            if not await _mark_alert(db, scope, stamp_column, snapshot.last_reset(window), current_time):
                continue
            if scope == GLOBAL_SCOPE:
                logger.critical("CRITICAL: global %s spending at %.0f%% of ceiling", window, ratio * 100)
                alerts.append(f"global_{window}_spend")
            else:
                logger.warning("User %s at %.0f%% of %s spending limit", user_id, ratio * 100, window)
                alerts.append(f"{window}_spend")
        await db.commit()
    except TRACKING_ERRORS:
        logger.exception("Spend alert check failed for user %s", user_id)
        await rollback_after_tracking_failure(db)
    return alerts


async def record_actual_spend(
    user_id: str,
    operation_type: str,
    db: AsyncSession,
    *,
    actual_cost: Optional[float] = None,
    latency_ms: Optional[int] = None,
    budget: Optional[QueryBudget] = None,
) -> bool:
    """Log the reported cost of a completed call next to its estimate.

    These records are for offline tuning of the cost table; they never feed
    back into authorization.
    """
    track(budget, "write", "spend_records")
    try:
        db.add(
            SpendRecord(
                user_id=user_id,
                operation_type=operation_type,
                estimated_micros=estimate_cost_micros(operation_type),
                actual_micros=usd_to_micros(actual_cost) if actual_cost is not None else None,
                latency_ms=latency_ms,
            )
        )
        await db.commit()
    except TRACKING_ERRORS:
        logger.exception("Recording actual spend failed for user %s", user_id)
        await rollback_after_tracking_failure(db)
        return False
    return True


async def get_spend_status(
    user_id: str,
    tier: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    profile = get_tier_profile(tier)
    track(budget, "read", "spend_windows")
    snapshot = await read_window(db, SpendWindow, {"scope": user_scope(user_id)}, now=now)
    return {
        **{window: micros_to_usd(snapshot.value(window)) for window in WINDOWS},
        "limits": {window: micros_to_usd(profile.spend_ceilings.get(window)) for window in WINDOWS},
    }
