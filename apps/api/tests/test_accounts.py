import pytest
from sqlalchemy import select

from models.quota_window import SpendWindow
from services.achievements import record_completed_action
from services.accounts import delete_metering_state
from services.credits import deduct_credits, get_credit_history
from services.dedupe import check_and_mark
from services.rate_limiter import authorize_action, get_rate_status
from services.spend_governor import GLOBAL_SCOPE, authorize_spend, record_actual_spend
from services.streaks import daily_check_in


USER_ID = "leaving-user"
T0 = 1_773_144_000.0


@pytest.mark.asyncio
async def test_delete_removes_every_per_user_record(db):
    await daily_check_in(USER_ID, "free", db, now=T0)
    await deduct_credits(USER_ID, db, amount=2, reason="identification")
    await authorize_action(USER_ID, "identify", "free", db, now=T0)
    await authorize_spend(USER_ID, "thumbnail_analysis", "free", db, now=T0)
    await check_and_mark(USER_ID, "abc123", db, window_seconds=10, now=T0)
    await record_actual_spend(USER_ID, "thumbnail_analysis", db, actual_cost=0.001)
    await record_completed_action(USER_ID, "identify", db)

    counts = await delete_metering_state(USER_ID, db)

    assert counts == {
        "credit_transactions": 4,
        "credit_balances": 1,
        "spend_windows": 1,
        "rate_windows": 1,
        "request_dedupe": 1,
        "spend_records": 1,
        "streaks": 1,
        "action_counters": 1,
        "achievement_unlocks": 1,
        "credit_purchases": 0,
    }
    assert await get_credit_history(USER_ID, db) == []
    assert (await get_rate_status(USER_ID, "free", db, now=T0))["usage"]["identify"]["hourly"] == 0

    # Shared global spend survives.
    remaining = await db.execute(select(SpendWindow.scope))
    assert remaining.scalars().all() == [GLOBAL_SCOPE]


@pytest.mark.asyncio
async def test_delete_for_unknown_user_is_harmless(db):
    counts = await delete_metering_state("nobody", db)
    assert set(counts.values()) == {0}
