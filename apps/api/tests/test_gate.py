import pytest
from sqlalchemy import select

from models.quota_window import SpendWindow
from services.credits import deduct_credits, get_credit_balance, get_credit_history
from services.errors import InsufficientCredits
from services.gate import GateRequest, run_gated_operation
from services.query_budget import QueryBudget


USER_ID = "gate-user"


def _guidance_request(fingerprint: str) -> GateRequest:
    return GateRequest(
        user_id=USER_ID,
        tier="free",
        action_type="guidance",
        operation_type="guidance_flash",
        credit_operation="guidance",
        fingerprint=fingerprint,
    )


@pytest.mark.asyncio
async def test_credit_rejection_reserves_no_spend(db):
    await deduct_credits(USER_ID, db, amount=15, reason="setup")
    calls = []

    async def call():
        calls.append(1)
        return "guidance"

    with pytest.raises(InsufficientCredits):
        await run_gated_operation(_guidance_request("first"), db, QueryBudget(), call)

    assert calls == []
    result = await db.execute(select(SpendWindow.scope, SpendWindow.daily, SpendWindow.total))
    assert all(daily == 0 and total == 0 for _, daily, total in result.all())


@pytest.mark.asyncio
async def test_lost_debit_race_keeps_completed_result(db, session_maker):
    await get_credit_balance(USER_ID, db)

    async def call():
        # Another request spends the last credits while this call runs.
        async with session_maker() as other:
            await deduct_credits(USER_ID, other, amount=15, reason="guidance")
        return "guidance"

    gated = await run_gated_operation(_guidance_request("race"), db, QueryBudget(), call)

    assert gated.result == "guidance"
    assert gated.credits_charged == 0
    assert gated.balance_after == 0
    assert await get_credit_balance(USER_ID, db) == 0


@pytest.mark.asyncio
async def test_successful_call_debits_last(db, session_maker):
    seen = []

    async def call():
        async with session_maker() as other:
            seen.append(await get_credit_balance(USER_ID, other))
        return "guidance"

    gated = await run_gated_operation(_guidance_request("debit"), db, QueryBudget(), call)

    assert seen == [15]
    assert gated.credits_charged == 1
    assert gated.balance_after == 14
    assert gated.achievements == []
    history = await get_credit_history(USER_ID, db)
    assert [(entry["reason"], entry["amount"]) for entry in history] == [("guidance", -1), ("signup", 15)]
