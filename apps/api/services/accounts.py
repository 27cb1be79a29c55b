"""Account lifecycle hooks for metering state."""

from __future__ import annotations

import logging
from typing import Dict

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from models.achievement import AchievementUnlock, ActionCounter
from models.credit_ledger import CreditBalance, CreditTransaction
from models.credit_purchase import CreditPurchase
from models.quota_window import RateWindow, SpendWindow
from models.request_dedupe import RequestDedupe
from models.spend_record import SpendRecord
from models.streak import Streak
from services.spend_governor import user_scope

logger = logging.getLogger(__name__)


async def delete_metering_state(user_id: str, db: AsyncSession) -> Dict[str, int]:
    """Delete every per-user metering record in one transaction.

    The global spend window is shared and is left untouched.
    """
    statements = {
        "credit_transactions": delete(CreditTransaction).where(CreditTransaction.user_id == user_id),
        "credit_balances": delete(CreditBalance).where(CreditBalance.user_id == user_id),
        "spend_windows": delete(SpendWindow).where(SpendWindow.scope == user_scope(user_id)),
        "rate_windows": delete(RateWindow).where(RateWindow.user_id == user_id),
        "request_dedupe": delete(RequestDedupe).where(RequestDedupe.user_id == user_id),
        "spend_records": delete(SpendRecord).where(SpendRecord.user_id == user_id),
        "streaks": delete(Streak).where(Streak.user_id == user_id),
        "action_counters": delete(ActionCounter).where(ActionCounter.user_id == user_id),
        "achievement_unlocks": delete(AchievementUnlock).where(AchievementUnlock.user_id == user_id),
        "credit_purchases": delete(CreditPurchase).where(CreditPurchase.user_id == user_id),
    }
    counts: Dict[str, int] = {}
    try:
        for table, statement in statements.items():
            result = await db.execute(statement.execution_options(synchronize_session=False))
            counts[table] = int(result.rowcount or 0)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Deleted metering state for user %s: %s", user_id, counts)
    return counts
