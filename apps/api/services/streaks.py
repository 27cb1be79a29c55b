"""Daily check-in streaks that pay out engagement credits."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.streak import Streak
from services.credits import award_credits
from services.errors import AlreadyCheckedIn
from services.query_budget import QueryBudget, track
from services.tiers import get_tier_profile

logger = logging.getLogger(__name__)


def _utc_now(now: Optional[float]) -> datetime:
    return datetime.fromtimestamp(now if now is not None else time.time(), tz=timezone.utc)


def _period_key(current: datetime) -> str:
    return f"{current.year:04d}-{current.month:02d}"


def _seconds_until_tomorrow(current: datetime) -> float:
    tomorrow = datetime.combine(current.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
    return (tomorrow - current).total_seconds()


def _milestones() -> Dict[int, int]:
    return {int(days): int(bonus) for days, bonus in settings.STREAK_MILESTONES.items()}


def next_milestone(current: int) -> Optional[int]:
    upcoming = sorted(days for days in _milestones() if days > current)
    return upcoming[0] if upcoming else None


def advance_streak(
    current: int,
    last_check_in: Optional[date],
    today: date,
    freezes_remaining: int,
) -> Dict[str, Any]:
    """Streak after checking in on ``today``.

    A consecutive day extends the streak. Missing exactly one day spends a
    freeze when one is left; any longer gap restarts at 1.
    """
    if last_check_in is None:
        return {"current": 1, "freezes_remaining": freezes_remaining, "freeze_used": False}

    gap = (today - last_check_in).days
    if gap == 1:
        return {"current": current + 1, "freezes_remaining": freezes_remaining, "freeze_used": False}
    if gap == 2 and freezes_remaining > 0:
        return {"current": current + 1, "freezes_remaining": freezes_remaining - 1, "freeze_used": True}
    return {"current": 1, "freezes_remaining": freezes_remaining, "freeze_used": False}


async def _ensure_streak(user_id: str, tier: str, db: AsyncSession, current: datetime) -> None:
    existing = await db.execute(select(Streak.user_id).where(Streak.user_id == user_id))
    if existing.first() is not None:
        return
    try:
        async with db.begin_nested():
            await db.execute(
                insert(Streak).values(
                    user_id=user_id,
                    tier=tier,
                    current=0,
                    longest=0,
                    total_check_ins=0,
                    last_check_in=None,
                    freezes_remaining=get_tier_profile(tier).streak_freezes,
                    freeze_period_key=_period_key(current),
                )
            )
    except IntegrityError:
        return


async def daily_check_in(
    user_id: str,
    tier: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Record today's check-in and award the daily credit plus any milestone bonus."""
    current_time = _utc_now(now)
    today = current_time.date()
    profile = get_tier_profile(tier)
    track(budget, "write", "streaks")

    await _ensure_streak(user_id, profile.name, db, current_time)
    result = await db.execute(
        select(
            Streak.current,
            Streak.longest,
            Streak.last_check_in,
            Streak.freezes_remaining,
        ).where(Streak.user_id == user_id)
    )
    row = result.one()
    if row.last_check_in is not None and row.last_check_in >= today:
        await db.rollback()
        raise AlreadyCheckedIn(_seconds_until_tomorrow(current_time))

    advanced = advance_streak(int(row.current), row.last_check_in, today, int(row.freezes_remaining))
    longest = max(int(row.longest), advanced["current"])

    # Guarded on the observed last check-in so a concurrent check-in today loses.
    if row.last_check_in is None:
        observed = Streak.last_check_in.is_(None)
    else:
        observed = Streak.last_check_in == row.last_check_in
    updated = await db.execute(
        update(Streak)
        .where(Streak.user_id == user_id, observed)
        .values(
            tier=profile.name,
            current=advanced["current"],
            longest=longest,
            total_check_ins=Streak.total_check_ins + 1,
            last_check_in=today,
            freezes_remaining=advanced["freezes_remaining"],
        )
        .execution_options(synchronize_session=False)
    )
    if updated.rowcount != 1:
        await db.rollback()
        raise AlreadyCheckedIn(_seconds_until_tomorrow(current_time))

    streak = advanced["current"]
    daily_credits = max(int(settings.DAILY_CHECK_IN_CREDITS), 0)
    bonus_credits = _milestones().get(streak, 0)

    # The streak advance and its credits commit together or not at all.
    balance = None
    try:
        if daily_credits > 0:
            balance = await award_credits(
                user_id,
                db,
                amount=daily_credits,
                reason="daily_check_in",
                metadata={"streak": streak},
                budget=budget,
                commit=False,
            )
        if bonus_credits > 0:
            balance = await award_credits(
                user_id,
                db,
                amount=bonus_credits,
                reason="streak_milestone",
                metadata={"streak": streak},
                budget=budget,
                commit=False,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if advanced["freeze_used"]:
        logger.info("streak_freeze_used user=%s remaining=%s", user_id, advanced["freezes_remaining"])
    if bonus_credits > 0:
        logger.info("streak_milestone user=%s streak=%s bonus=%s", user_id, streak, bonus_credits)

    return {
        "current": streak,
        "longest": longest,
        "is_milestone": bonus_credits > 0,
        "daily_credits": daily_credits,
        "bonus_credits": bonus_credits,
        "total_credits": daily_credits + bonus_credits,
        "freeze_used": advanced["freeze_used"],
        "freezes_remaining": advanced["freezes_remaining"],
        "next_milestone": next_milestone(streak),
        "balance": balance,
    }


async def get_streak_status(
    user_id: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    today = _utc_now(now).date()
    track(budget, "read", "streaks")
    result = await db.execute(
        select(
            Streak.current,
            Streak.longest,
            Streak.total_check_ins,
            Streak.last_check_in,
            Streak.freezes_remaining,
        ).where(Streak.user_id == user_id)
    )
    row = result.first()
    if row is None:
        return {
            "current": 0,
            "longest": 0,
            "total_check_ins": 0,
            "last_check_in": None,
            "can_check_in": True,
            "freezes_remaining": 0,
            "next_milestone": next_milestone(0),
        }
    return {
        "current": int(row.current),
        "longest": int(row.longest),
        "total_check_ins": int(row.total_check_ins),
        "last_check_in": row.last_check_in.isoformat() if row.last_check_in else None,
        "can_check_in": row.last_check_in is None or row.last_check_in < today,
        "freezes_remaining": int(row.freezes_remaining),
        "next_milestone": next_milestone(int(row.current)),
    }


async def reset_monthly_freezes(db: AsyncSession, *, now: Optional[float] = None) -> int:
    """Restore each streak's freezes to its tier allowance once per calendar month."""
    period = _period_key(_utc_now(now))
    stale = or_(Streak.freeze_period_key.is_(None), Streak.freeze_period_key != period)
    allowances = {tier: int(count) for tier, count in settings.STREAK_FREEZES.items()}

    count = 0
    for tier, allowance in allowances.items():
        result = await db.execute(
            update(Streak)
            .where(stale, Streak.tier == tier)
            .values(freezes_remaining=allowance, freeze_period_key=period)
            .execution_options(synchronize_session=False)
        )
        count += int(result.rowcount or 0)

    result = await db.execute(
        update(Streak)
        .where(stale, Streak.tier.notin_(list(allowances)))
        .values(freezes_remaining=get_tier_profile(None).streak_freezes, freeze_period_key=period)
        .execution_options(synchronize_session=False)
    )
    count += int(result.rowcount or 0)
    await db.commit()
    if count:
        logger.info("Reset streak freezes for %s users (period %s)", count, period)
    return count
