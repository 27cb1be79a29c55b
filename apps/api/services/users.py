"""User records and subscription tier lookup."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.user import User
from services.query_budget import QueryBudget, track
from services.tiers import DEFAULT_TIER, normalize_tier


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> None:
    existing = await db.execute(select(User.id).where(User.id == user_id))
    if existing.first() is not None:
        return
    try:
        async with db.begin_nested():
            await db.execute(insert(User).values(id=user_id, email=email, subscription_tier=DEFAULT_TIER))
    except IntegrityError:
        return
    await db.commit()


async def get_user_tier(
    db: AsyncSession,
    user_id: str,
    *,
    budget: Optional[QueryBudget] = None,
) -> str:
    """Subscription tier from the user record; unknown users and tiers read as free."""
    track(budget, "read", "users")
    result = await db.execute(select(User.subscription_tier).where(User.id == user_id))
    return normalize_tier(result.scalar_one_or_none())
