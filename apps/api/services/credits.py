"""Credit ledger and usage accounting helpers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_ledger import CreditBalance, CreditTransaction
from services.errors import CollectionLimitReached, InsufficientCredits
from services.query_budget import QueryBudget, track
from services.tiers import get_tier_profile

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


def _transaction_dict(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "reason": entry.reason,
        "metadata": entry.metadata_json or {},
        "balance_after": entry.balance_after,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def _read_balance(user_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(CreditBalance.balance).where(CreditBalance.user_id == user_id))
    return result.scalar_one_or_none()


async def _ensure_balance(user_id: str, db: AsyncSession, *, commit: bool = True) -> int:
    """Return the current balance, creating it with the signup grant on first access."""
    balance = await _read_balance(user_id, db)
    if balance is not None:
        return int(balance)

    grant = max(int(settings.SIGNUP_CREDITS), 0)
    try:
        async with db.begin_nested():
            await db.execute(
                insert(CreditBalance).values(
                    user_id=user_id,
                    balance=grant,
                    total_earned=grant,
                    total_spent=0,
                )
            )
            await db.execute(
                insert(CreditTransaction).values(
                    user_id=user_id,
                    type="award",
                    amount=grant,
                    reason="signup",
                    metadata_json={},
                    balance_after=grant,
                )
            )
    except IntegrityError:
        # Another request created the balance first.
        return int(await _read_balance(user_id, db) or 0)

    if commit:
        await db.commit()
    logger.info("credit_balance_created user=%s grant=%s", user_id, grant)
    return grant


async def get_credit_balance(
    user_id: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
) -> int:
    track(budget, "read", "credit_balances")
    return await _ensure_balance(user_id, db)


async def award_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
    budget: Optional[QueryBudget] = None,
    commit: bool = True,
) -> int:
    """Atomically add ``amount`` credits and log the award; returns the new balance.

    With ``commit=False`` the award joins the caller's transaction and is
    persisted only when the caller commits.
    """
    grant = int(amount)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="amount must be greater than 0")

    track(budget, "write", "credit_balances")
    await _ensure_balance(user_id, db, commit=commit)
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .values(
            balance=CreditBalance.balance + grant,
            total_earned=CreditBalance.total_earned + grant,
        )
        .returning(CreditBalance.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = int(result.scalar_one())
    db.add(
        CreditTransaction(
            user_id=user_id,
            type="award",
            amount=grant,
            reason=reason,
            metadata_json=metadata or {},
            balance_after=new_balance,
        )
    )
    if commit:
        await db.commit()
    else:
        await db.flush()
    logger.info("credits_awarded user=%s amount=%s reason=%s balance=%s", user_id, grant, reason, new_balance)
    return new_balance


async def deduct_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
    budget: Optional[QueryBudget] = None,
) -> int:
    """Atomically remove ``amount`` credits; raises InsufficientCredits with nothing written."""
    cost = int(amount)
    if cost <= 0:
        raise HTTPException(status_code=422, detail="amount must be greater than 0")

    track(budget, "write", "credit_balances")
    await _ensure_balance(user_id, db)
    result = await db.execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id, CreditBalance.balance >= cost)
        .values(
            balance=CreditBalance.balance - cost,
            total_spent=CreditBalance.total_spent + cost,
        )
        .returning(CreditBalance.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        available = int(await _read_balance(user_id, db) or 0)
        await db.rollback()
        logger.info("credits_insufficient user=%s required=%s available=%s", user_id, cost, available)
        raise InsufficientCredits(cost, available)

    db.add(
        CreditTransaction(
            user_id=user_id,
            type="deduction",
            amount=-cost,
            reason=reason,
            metadata_json=metadata or {},
            balance_after=int(new_balance),
        )
    )
    await db.commit()
    logger.info("credits_deducted user=%s amount=%s reason=%s balance=%s", user_id, cost, reason, new_balance)
    return int(new_balance)


async def check_credits(
    user_id: str,
    db: AsyncSession,
    *,
    cost: int,
    tier: str,
    budget: Optional[QueryBudget] = None,
) -> Dict[str, Any]:
    """Confirm the user can pay ``cost``; tiers without credit metering always can."""
    profile = get_tier_profile(tier)
    if not profile.needs_credits:
        return {"has_credits": True, "balance": None, "exempt": True}

    balance = await get_credit_balance(user_id, db, budget=budget)
    if balance < cost:
        raise InsufficientCredits(cost, balance)
    return {"has_credits": True, "balance": balance, "exempt": False}


async def get_credit_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    budget: Optional[QueryBudget] = None,
) -> List[Dict[str, Any]]:
    page_size = min(max(int(limit), 1), MAX_HISTORY_LIMIT)
    track(budget, "read", "credit_transactions")
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.id.desc())
        .limit(page_size)
    )
    return [_transaction_dict(entry) for entry in result.scalars().all()]


async def get_credit_summary(
    user_id: str,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db, budget=budget)
    track(budget, "read", "credit_balances")
    totals = await db.execute(
        select(CreditBalance.total_earned, CreditBalance.total_spent).where(CreditBalance.user_id == user_id)
    )
    total_earned, total_spent = totals.one()

    track(budget, "read", "credit_transactions")
    breakdown = await db.execute(
        select(CreditTransaction.reason, func.sum(CreditTransaction.amount))
        .where(CreditTransaction.user_id == user_id, CreditTransaction.type == "award")
        .group_by(CreditTransaction.reason)
    )
    recent = await get_credit_history(user_id, db, limit=30, budget=budget)
    return {
        "balance": balance,
        "total_earned": int(total_earned),
        "total_spent": int(total_spent),
        "earning_breakdown": {reason: int(total or 0) for reason, total in breakdown.all()},
        "signup_credits": max(int(settings.SIGNUP_CREDITS), 0),
        "costs": {operation: max(int(cost), 0) for operation, cost in settings.CREDIT_COSTS.items()},
        "recent_entries": recent,
    }


def check_collection_limit(current_count: int, tier: str) -> Dict[str, Any]:
    """Raise CollectionLimitReached once the tier's collection is full."""
    profile = get_tier_profile(tier)
    limit = profile.collection_max
    if limit is not None and current_count >= limit:
        raise CollectionLimitReached(profile.name, limit)
    return {
        "can_add": True,
        "current": current_count,
        "max": limit,
        "remaining": None if limit is None else limit - current_count,
    }
