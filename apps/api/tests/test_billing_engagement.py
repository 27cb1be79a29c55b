import pytest
from fastapi import HTTPException

from config import settings
from main import app
from services.payments import CheckoutSession, get_payment_provider
from services.session_token import create_session_token


TEST_USER_ID = "billing-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}


class FakeCheckoutProvider:
    """In-memory checkout sessions that start unpaid."""

    def __init__(self):
        self.sessions = {}

    async def create_session(self, user_id, credits):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = CheckoutSession(
            id=session_id,
            user_id=user_id,
            credits=credits,
            payment_status="unpaid",
            url=f"https://checkout.test/{session_id}",
        )
        return self.sessions[session_id]

    async def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise HTTPException(status_code=404, detail="Checkout session not found.")
        return self.sessions[session_id]

    def mark_paid(self, session_id):
        self.sessions[session_id].payment_status = "paid"


@pytest.fixture
def payment_provider():
    provider = FakeCheckoutProvider()
    app.dependency_overrides[get_payment_provider] = lambda: provider
    yield provider
    app.dependency_overrides.pop(get_payment_provider, None)


@pytest.mark.asyncio
async def test_paid_checkout_is_credited_once(client, payment_provider):
    checkout = await client.post("/billing/checkout", json={"credits": 25}, headers=TEST_AUTH_HEADER)
    assert checkout.status_code == 200
    session_id = checkout.json()["session_id"]
    assert checkout.json()["checkout_url"].endswith(session_id)

    unpaid = await client.post("/billing/checkout/confirm", json={"session_id": session_id}, headers=TEST_AUTH_HEADER)
    assert unpaid.status_code == 409

    payment_provider.mark_paid(session_id)
    confirmed = await client.post(
        "/billing/checkout/confirm", json={"session_id": session_id}, headers=TEST_AUTH_HEADER
    )
    assert confirmed.status_code == 200
    assert confirmed.json() == {"ok": True, "credits_added": 25, "balance_after": 40, "already_applied": False}

    repeated = await client.post(
        "/billing/checkout/confirm", json={"session_id": session_id}, headers=TEST_AUTH_HEADER
    )
    assert repeated.status_code == 200
    assert repeated.json()["already_applied"] is True
    assert repeated.json()["balance_after"] == 40

    summary = await client.get("/billing/credits", headers=TEST_AUTH_HEADER)
    body = summary.json()
    assert body["balance"] == 40
    assert body["earning_breakdown"] == {"signup": 15, "purchase": 25}
    assert body["costs"]["identification"] == 1

    history = await client.get("/billing/credits/history?limit=1", headers=TEST_AUTH_HEADER)
    entries = history.json()["entries"]
    assert len(entries) == 1
    assert entries[0]["reason"] == "purchase"
    assert entries[0]["metadata"]["billing_reference"] == session_id


@pytest.mark.asyncio
async def test_another_users_checkout_cannot_be_redeemed(client, payment_provider):
    session = await payment_provider.create_session("someone-else", 50)
    payment_provider.mark_paid(session.id)

    resp = await client.post("/billing/checkout/confirm", json={"session_id": session.id}, headers=TEST_AUTH_HEADER)
    assert resp.status_code == 403

    credits = await client.get("/billing/credits", headers=TEST_AUTH_HEADER)
    assert credits.json()["balance"] == 15


@pytest.mark.asyncio
async def test_credits_cannot_be_granted_without_payment(client):
    topup = await client.post("/billing/topup", json={"credits": 10000}, headers=TEST_AUTH_HEADER)
    assert topup.status_code == 404

    confirm = await client.post("/billing/checkout/confirm", json={"session_id": "cs_forged"}, headers=TEST_AUTH_HEADER)
    assert confirm.status_code == 503

    credits = await client.get("/billing/credits", headers=TEST_AUTH_HEADER)
    assert credits.json()["balance"] == 15


@pytest.mark.asyncio
async def test_cross_user_access_is_forbidden(client):
    resp = await client.get("/billing/credits?user_id=someone-else", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_checkout_is_unavailable_while_billing_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "BILLING_ENABLED", False)
    resp = await client.post("/billing/checkout", json={"credits": 10}, headers=TEST_AUTH_HEADER)
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_check_in_endpoint_once_per_day(client):
    first = await client.post("/engagement/check-in", headers=TEST_AUTH_HEADER)
    assert first.status_code == 200
    assert first.json()["current"] == 1
    assert first.json()["balance"] == 16

    second = await client.post("/engagement/check-in", headers=TEST_AUTH_HEADER)
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "already_checked_in"

    streak = await client.get("/engagement/streak", headers=TEST_AUTH_HEADER)
    assert streak.json()["can_check_in"] is False


@pytest.mark.asyncio
async def test_liveness_endpoint(client):
    resp = await client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"alive": True}


@pytest.mark.asyncio
async def test_collection_capacity_by_tier(client, make_user):
    room = await client.get("/usage/collection?current_count=9", headers=TEST_AUTH_HEADER)
    assert room.status_code == 200
    assert room.json()["remaining"] == 1

    full = await client.get("/usage/collection?current_count=10", headers=TEST_AUTH_HEADER)
    assert full.status_code == 403
    assert full.json()["detail"]["code"] == "collection_limit_reached"

    await make_user("founder-user", tier="founders")
    founder_auth = {"Authorization": f"Bearer {create_session_token('founder-user')['token']}"}
    unlimited = await client.get("/usage/collection?current_count=5000", headers=founder_auth)
    assert unlimited.json()["max"] is None


@pytest.mark.asyncio
async def test_achievements_endpoint_lists_unlocks(client):
    empty = await client.get("/engagement/achievements", headers=TEST_AUTH_HEADER)
    assert empty.status_code == 200
    assert empty.json()["count"] == 0
