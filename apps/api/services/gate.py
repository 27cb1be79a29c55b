"""Run an expensive AI call behind every metering gate."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.achievements import record_completed_action
from services.credits import check_credits, deduct_credits
from services.dedupe import check_and_mark
from services.errors import AnalysisTimeout, InsufficientCredits
from services.query_budget import QueryBudget
from services.rate_limiter import authorize_action
from services.spend_governor import authorize_spend, check_spend_alerts, record_actual_spend
from services.tiers import credit_cost, get_tier_profile

logger = logging.getLogger(__name__)


@dataclass
class GateRequest:
    user_id: str
    tier: str
    action_type: str
    operation_type: str
    credit_operation: str
    fingerprint: str


@dataclass
class GatedResult:
    result: Any
    credits_charged: int
    balance_after: Optional[int]
    estimated_cost: float
    alerts: list
    achievements: list


async def run_gated_operation(
    request: GateRequest,
    db: AsyncSession,
    budget: Optional[QueryBudget],
    call: Callable[[], Awaitable[Any]],
    *,
    timeout_seconds: Optional[float] = None,
) -> GatedResult:
    """Admit ``call`` through rate, dedupe, credit and spend gates, then debit.

    Every rejection is raised before ``call`` runs. The credit check is
    read-only and runs before spend is reserved, so a request without credits
    never counts against the spend windows. Credits are debited only after the
    call succeeds, so a failed or timed-out call costs nothing.
    """
    profile = get_tier_profile(request.tier)
    cost = credit_cost(request.credit_operation)

    await authorize_action(request.user_id, request.action_type, profile.name, db, budget=budget)
    await check_and_mark(
        request.user_id,
        request.fingerprint,
        db,
        window_seconds=float(settings.DEDUPE_WINDOW_SECONDS),
        budget=budget,
    )
    if cost > 0:
        await check_credits(request.user_id, db, cost=cost, tier=profile.name, budget=budget)
    authorization = await authorize_spend(request.user_id, request.operation_type, profile.name, db, budget=budget)
    # No transaction stays open across the external call.
    await db.commit()

    limit = float(timeout_seconds if timeout_seconds is not None else settings.ANALYSIS_TIMEOUT_SECONDS)
    started = time.perf_counter()
    try:
        result = await asyncio.wait_for(call(), timeout=limit)
    except asyncio.TimeoutError:
        logger.warning(
            "Analysis timed out after %ss for user %s (%s)",
            limit,
            request.user_id,
            request.operation_type,
        )
        raise AnalysisTimeout(limit)
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    await record_actual_spend(
        request.user_id,
        request.operation_type,
        db,
        actual_cost=getattr(result, "estimated_cost", None),
        latency_ms=getattr(result, "latency_ms", None) or elapsed_ms,
        budget=budget,
    )

    charged = 0
    balance_after = None
    if profile.needs_credits and cost > 0:
        try:
            balance_after = await deduct_credits(
                request.user_id,
                db,
                amount=cost,
                reason=request.credit_operation,
                metadata={"operation_type": request.operation_type},
                budget=budget,
            )
            charged = cost
        except InsufficientCredits as e:
            # A concurrent request spent the credit after this one was admitted.
            logger.warning(
                "Debit of %s credits for user %s failed after %s completed (available %s)",
                cost,
                request.user_id,
                request.operation_type,
                e.available,
            )
            balance_after = e.available

    achievements = await record_completed_action(request.user_id, request.action_type, db, budget=budget)
    if profile.needs_credits and achievements and achievements[-1]["balance_after"] is not None:
        balance_after = achievements[-1]["balance_after"]
    alerts = await check_spend_alerts(request.user_id, profile.name, db, budget=budget)
    return GatedResult(
        result=result,
        credits_charged=charged,
        balance_after=balance_after,
        estimated_cost=authorization.estimated_cost,
        alerts=alerts,
        achievements=achievements,
    )
