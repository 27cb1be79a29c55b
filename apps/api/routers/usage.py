"""Usage and limits reporting. No AI calls."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import check_collection_limit
from services.query_budget import QueryBudget, get_query_budget
from services.rate_limiter import get_rate_status
from services.spend_governor import get_spend_status
from services.users import get_user_tier

router = APIRouter()


@router.get("/stats")
async def usage_stats(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    """Current spend and request usage against the caller's tier limits."""
    tier = await get_user_tier(db, auth.user_id, budget=budget)
    spending = await get_spend_status(auth.user_id, tier, db, budget=budget)
    rates = await get_rate_status(auth.user_id, tier, db, budget=budget)
    return {
        "tier": tier,
        "spending": spending,
        "usage": rates["usage"],
        "remaining": rates["remaining"],
    }


@router.get("/collection")
async def collection_capacity(
    current_count: int = Query(ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    """Whether one more crystal fits the caller's collection; 403 once it is full."""
    tier = await get_user_tier(db, auth.user_id, budget=budget)
    return {"tier": tier, **check_collection_limit(current_count, tier)}
