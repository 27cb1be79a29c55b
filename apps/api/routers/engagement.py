"""Daily check-in and streak endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.achievements import get_achievements
from services.query_budget import QueryBudget, get_query_budget
from services.streaks import daily_check_in, get_streak_status
from services.users import get_user_tier

router = APIRouter()


@router.post("/check-in")
async def check_in(
    _rate_limit: None = Depends(rate_limit("check_in", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    tier = await get_user_tier(db, auth.user_id, budget=budget)
    return await daily_check_in(auth.user_id, tier, db, budget=budget)


@router.get("/streak")
async def streak_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    return await get_streak_status(auth.user_id, db, budget=budget)


@router.get("/achievements")
async def achievements(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    unlocked = await get_achievements(auth.user_id, db, budget=budget)
    return {"user_id": auth.user_id, "achievements": unlocked, "count": len(unlocked)}
