"""Crystal identification router."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from multimodal.image import normalize_image
from multimodal.llm import analyze_crystal
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.dedupe import request_fingerprint
from services.gate import GateRequest, run_gated_operation
from services.query_budget import QueryBudget, get_query_budget
from services.tiers import get_tier_profile
from services.users import get_user_tier

router = APIRouter()
logger = logging.getLogger(__name__)


class IdentifyRequest(BaseModel):
    image_data: str
    image_path: Optional[str] = None
    force_full_analysis: bool = False


@router.post("")
async def identify_crystal(
    request: IdentifyRequest,
    _rate_limit: None = Depends(rate_limit("identify", limit=60, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    tier = await get_user_tier(db, auth.user_id, budget=budget)
    profile = get_tier_profile(tier)
    image = normalize_image(request.image_data, profile.name)

    if request.force_full_analysis and not profile.full_analysis_allowed:
        raise HTTPException(status_code=403, detail="Full resolution analysis requires Pro subscription")

    analysis_type = "full" if request.force_full_analysis else "initial"
    operation_type = "full_image_analysis" if analysis_type == "full" else "thumbnail_analysis"
    model = settings.ANALYSIS_MODEL_FULL if profile.full_analysis_allowed else settings.ANALYSIS_MODEL_FAST
    logger.info("identify user=%s tier=%s analysis=%s model=%s", auth.user_id, profile.name, analysis_type, model)

    gated = await run_gated_operation(
        GateRequest(
            user_id=auth.user_id,
            tier=profile.name,
            action_type="identify",
            operation_type=operation_type,
            credit_operation="identification",
            fingerprint=request_fingerprint(image.encoded),
        ),
        db,
        budget,
        lambda: asyncio.to_thread(
            analyze_crystal,
            image.encoded,
            model=model,
            analysis_type=analysis_type,
            api_key=settings.OPENAI_API_KEY,
        ),
    )
    analysis = gated.result
    return {
        **analysis.model_dump(exclude={"estimated_cost", "latency_ms"}),
        "image_path": request.image_path,
        "metering": {
            "tier": profile.name,
            "credits_charged": gated.credits_charged,
            "credits_remaining": gated.balance_after,
            "estimated_cost": gated.estimated_cost,
            "alerts": gated.alerts,
            "achievements": gated.achievements,
            "queries": budget.count,
        },
    }
