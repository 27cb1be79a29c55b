"""Action milestones that unlock one-time credit awards."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.achievement import AchievementUnlock, ActionCounter
from services.credits import award_credits
from services.query_budget import QueryBudget, track
from services.spend_governor import TRACKING_ERRORS, rollback_after_tracking_failure

logger = logging.getLogger(__name__)


def _milestones(action_type: str) -> Dict[int, tuple]:
    return {int(count): tuple(entry) for count, entry in settings.ACHIEVEMENT_MILESTONES.get(action_type, {}).items()}


async def _increment_counter(user_id: str, action_type: str, db: AsyncSession) -> int:
    keys = (ActionCounter.user_id == user_id, ActionCounter.action_type == action_type)
    existing = await db.execute(select(ActionCounter.count).where(*keys))
    if existing.first() is None:
        try:
            async with db.begin_nested():
                await db.execute(insert(ActionCounter).values(user_id=user_id, action_type=action_type, count=0))
        except IntegrityError:
            pass

    result = await db.execute(
        update(ActionCounter)
        .where(*keys)
        .values(count=ActionCounter.count + 1)
        .returning(ActionCounter.count)
        .execution_options(synchronize_session=False)
    )
    return int(result.scalar_one())


async def unlock_achievement(
    user_id: str,
    achievement_id: str,
    credits: int,
    db: AsyncSession,
    *,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Record ``achievement_id`` and award its credits; None when it was already earned.

    Runs inside the caller's transaction and does not commit.
    """
    try:
        async with db.begin_nested():
            await db.execute(
                insert(AchievementUnlock).values(
                    user_id=user_id,
                    achievement_id=achievement_id,
                    credits=max(int(credits), 0),
                    metadata_json=metadata or {},
                )
            )
    except IntegrityError:
        return None

    balance = None
    if credits > 0:
        balance = await award_credits(
            user_id,
            db,
            amount=credits,
            reason=f"achievement_{achievement_id}",
            metadata={"achievement": achievement_id},
            commit=False,
        )
    logger.info("achievement_unlocked user=%s achievement=%s credits=%s", user_id, achievement_id, credits)
    return {"id": achievement_id, "credits": max(int(credits), 0), "balance_after": balance}


async def record_completed_action(
    user_id: str,
    action_type: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
) -> List[Dict[str, Any]]:
    """Count one completed action and unlock every milestone the new total reaches.

    The counter, the unlocks and their credit awards commit as one ledger
    write. Store failures are logged and skipped so a completed operation is
    never lost to bookkeeping.
    """
    milestones = _milestones(action_type)
    if not milestones:
        return []

    track(budget, "write", "achievements")
    unlocked: List[Dict[str, Any]] = []
    try:
        total = await _increment_counter(user_id, action_type, db)
        for count in sorted(milestones):
            if total < count:
                break
            achievement_id, credits = milestones[count]
            earned = await unlock_achievement(
                user_id,
                achievement_id,
                int(credits),
                db,
                metadata={"action_type": action_type, "count": total},
            )
            if earned is not None:
                unlocked.append(earned)
        await db.commit()
    except TRACKING_ERRORS:
        logger.exception("Achievement bookkeeping failed for user %s (%s)", user_id, action_type)
        await rollback_after_tracking_failure(db)
        return []
    return unlocked


async def get_achievements(
    user_id: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
) -> List[Dict[str, Any]]:
    track(budget, "read", "achievements")
    result = await db.execute(
        select(AchievementUnlock)
        .where(AchievementUnlock.user_id == user_id)
        .order_by(AchievementUnlock.unlocked_at, AchievementUnlock.achievement_id)
    )
    return [
        {
            "id": unlock.achievement_id,
            "credits": unlock.credits,
            "unlocked_at": unlock.unlocked_at.isoformat() if unlock.unlocked_at else None,
        }
        for unlock in result.scalars().all()
    ]
