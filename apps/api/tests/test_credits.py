import asyncio

import pytest
from fastapi import HTTPException

from services.credits import (
    award_credits,
    check_collection_limit,
    check_credits,
    deduct_credits,
    get_credit_balance,
    get_credit_history,
    get_credit_summary,
)
from services.errors import CollectionLimitReached, InsufficientCredits


USER_ID = "ledger-user"


@pytest.mark.asyncio
async def test_first_read_grants_signup_credits_once(db):
    assert await get_credit_balance(USER_ID, db) == 15
    assert await get_credit_balance(USER_ID, db) == 15

    history = await get_credit_history(USER_ID, db)
    assert len(history) == 1
    assert history[0]["type"] == "award"
    assert history[0]["reason"] == "signup"
    assert history[0]["balance_after"] == 15


@pytest.mark.asyncio
async def test_award_and_deduct_keep_balance_conserved(db):
    assert await award_credits(USER_ID, db, amount=5, reason="purchase") == 20
    assert await deduct_credits(USER_ID, db, amount=3, reason="identification") == 17

    summary = await get_credit_summary(USER_ID, db)
    assert summary["balance"] == 17
    assert summary["balance"] == summary["total_earned"] - summary["total_spent"]
    assert summary["total_earned"] == 20
    assert summary["total_spent"] == 3
    assert summary["earning_breakdown"] == {"signup": 15, "purchase": 5}

    history = await get_credit_history(USER_ID, db)
    assert [entry["amount"] for entry in history] == [-3, 5, 15]
    assert history[0]["balance_after"] == 17


@pytest.mark.asyncio
async def test_insufficient_credits_changes_nothing(db):
    await get_credit_balance(USER_ID, db)

    with pytest.raises(InsufficientCredits) as exc_info:
        await deduct_credits(USER_ID, db, amount=16, reason="identification")

    assert exc_info.value.status_code == 402
    assert exc_info.value.detail["code"] == "insufficient_credits"
    assert exc_info.value.detail["available"] == 15
    assert await get_credit_balance(USER_ID, db) == 15
    assert len(await get_credit_history(USER_ID, db)) == 1


@pytest.mark.asyncio
async def test_non_positive_amounts_are_rejected(db):
    with pytest.raises(HTTPException) as award_exc:
        await award_credits(USER_ID, db, amount=0, reason="bonus")
    assert award_exc.value.status_code == 422

    with pytest.raises(HTTPException) as deduct_exc:
        await deduct_credits(USER_ID, db, amount=-2, reason="refund")
    assert deduct_exc.value.status_code == 422


@pytest.mark.asyncio
async def test_concurrent_deductions_never_overdraw(session_maker):
    async with session_maker() as session:
        await get_credit_balance(USER_ID, session)
        await deduct_credits(USER_ID, session, amount=11, reason="setup")

    async def attempt():
        async with session_maker() as session:
            return await deduct_credits(USER_ID, session, amount=1, reason="identification")

    results = await asyncio.gather(*(attempt() for _ in range(5)), return_exceptions=True)

    successes = [result for result in results if isinstance(result, int)]
    failures = [result for result in results if isinstance(result, InsufficientCredits)]
    assert len(successes) == 4
    assert len(failures) == 1
    assert sorted(successes) == [0, 1, 2, 3]

    async with session_maker() as session:
        summary = await get_credit_summary(USER_ID, session)
    assert summary["balance"] == 0
    assert summary["total_spent"] == 15


@pytest.mark.asyncio
async def test_concurrent_awards_are_all_applied(session_maker):
    async with session_maker() as session:
        await get_credit_balance(USER_ID, session)

    async def attempt(amount):
        async with session_maker() as session:
            return await award_credits(USER_ID, session, amount=amount, reason="daily_check_in")

    results = await asyncio.gather(*(attempt(amount) for amount in (1, 2, 3, 4, 5)))

    assert max(results) == 30
    assert len(set(results)) == 5

    async with session_maker() as session:
        summary = await get_credit_summary(USER_ID, session)
        history = await get_credit_history(USER_ID, session)
    assert summary["balance"] == 30
    assert summary["total_earned"] == 30
    assert len(history) == 6
    assert sorted(entry["balance_after"] for entry in history) == sorted(results + [15])


@pytest.mark.asyncio
async def test_award_without_commit_joins_caller_transaction(db):
    await get_credit_balance(USER_ID, db)
    assert await award_credits(USER_ID, db, amount=5, reason="purchase", commit=False) == 20
    await db.rollback()

    assert await get_credit_balance(USER_ID, db) == 15
    assert len(await get_credit_history(USER_ID, db)) == 1


@pytest.mark.asyncio
async def test_history_is_newest_first_and_clamped(db):
    for _ in range(3):
        await award_credits(USER_ID, db, amount=1, reason="daily_check_in")

    assert len(await get_credit_history(USER_ID, db, limit=2)) == 2
    assert len(await get_credit_history(USER_ID, db, limit=0)) == 1
    history = await get_credit_history(USER_ID, db, limit=500)
    assert len(history) == 4
    assert [entry["balance_after"] for entry in history] == [18, 17, 16, 15]


@pytest.mark.asyncio
async def test_check_credits_exempts_unmetered_tiers(db):
    assert await check_credits("premium-user", db, cost=1, tier="premium") == {
        "has_credits": True,
        "balance": None,
        "exempt": True,
    }
    # Exempt tiers never get a balance row created.
    assert await get_credit_history("premium-user", db) == []

    result = await check_credits(USER_ID, db, cost=1, tier="free")
    assert result["exempt"] is False
    assert result["balance"] == 15

    with pytest.raises(InsufficientCredits):
        await check_credits(USER_ID, db, cost=16, tier="free")


def test_collection_limit_by_tier():
    assert check_collection_limit(9, "free")["remaining"] == 1

    with pytest.raises(CollectionLimitReached) as exc_info:
        check_collection_limit(10, "free")
    assert exc_info.value.status_code == 403
    assert "Upgrade to Premium" in exc_info.value.detail["message"]

    unlimited = check_collection_limit(50_000, "founders")
    assert unlimited["max"] is None
    assert unlimited["remaining"] is None
