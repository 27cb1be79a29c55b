"""Credit-pack checkout through Stripe and redemption of paid sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from fastapi import HTTPException
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_purchase import CreditPurchase
from services.credits import award_credits, get_credit_balance
from services.query_budget import QueryBudget, track

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    id: str
    user_id: Optional[str]
    credits: int
    payment_status: str
    url: Optional[str] = None
    provider: str = "stripe"

    @property
    def paid(self) -> bool:
        return self.payment_status == "paid"


def _from_stripe(session: Any) -> CheckoutSession:
    metadata = session.get("metadata") or {}
    return CheckoutSession(
        id=session["id"],
        user_id=session.get("client_reference_id") or metadata.get("user_id"),
        credits=int(metadata.get("credits") or 0),
        payment_status=session.get("payment_status") or "unpaid",
        url=session.get("url"),
    )


def _with_session_placeholder(url: str) -> str:
    if "{CHECKOUT_SESSION_ID}" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


class StripeCheckoutProvider:
    """Stripe Checkout in payment mode; the configured price is one credit."""

    def __init__(self, api_key: str, price_id: str, success_url: str, cancel_url: str):
        self.api_key = api_key
        self.price_id = price_id
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def create_session(self, user_id: str, credits: int) -> CheckoutSession:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                mode="payment",
                client_reference_id=user_id,
                line_items=[{"price": self.price_id, "quantity": credits}],
                success_url=_with_session_placeholder(self.success_url),
                cancel_url=self.cancel_url,
                metadata={"user_id": user_id, "credits": str(credits)},
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create checkout session for user %s", user_id)
            raise HTTPException(status_code=502, detail="Failed to create checkout session") from e
        return _from_stripe(session)

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            raise HTTPException(status_code=404, detail="Checkout session not found.") from e
        except stripe.StripeError as e:
            logger.exception("Failed to retrieve checkout session %s", session_id)
            raise HTTPException(status_code=502, detail="Failed to verify checkout session") from e
        return _from_stripe(session)


def get_payment_provider() -> StripeCheckoutProvider:
    """FastAPI dependency; 503 until billing is enabled and Stripe is configured."""
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")
    if not settings.STRIPE_SECRET_KEY or not settings.STRIPE_PRICE_ID:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")
    return StripeCheckoutProvider(
        api_key=settings.STRIPE_SECRET_KEY,
        price_id=settings.STRIPE_PRICE_ID,
        success_url=settings.STRIPE_SUCCESS_URL,
        cancel_url=settings.STRIPE_CANCEL_URL,
    )


async def redeem_checkout_session(
    user_id: str,
    session: CheckoutSession,
    db: AsyncSession,
    *,
    budget: Optional[QueryBudget] = None,
) -> Dict[str, Any]:
    """Credit a paid session to its owner exactly once.

    The purchase row and the ledger award commit together, so a retried
    confirmation either finds the row or applies both.
    """
    if session.user_id != user_id:
        raise HTTPException(status_code=403, detail="Checkout session does not belong to this user.")
    if not session.paid:
        raise HTTPException(status_code=409, detail="Payment is not complete yet.")
    if session.credits <= 0:
        raise HTTPException(status_code=422, detail="Checkout session carries no credits.")

    track(budget, "write", "credit_purchases")
    try:
        async with db.begin_nested():
            await db.execute(
                insert(CreditPurchase).values(
                    session_id=session.id,
                    user_id=user_id,
                    provider=session.provider,
                    credits=session.credits,
                )
            )
    except IntegrityError:
        await db.rollback()
        logger.info("Checkout session %s already redeemed for user %s", session.id, user_id)
        balance = await get_credit_balance(user_id, db, budget=budget)
        return {"ok": True, "credits_added": 0, "balance_after": balance, "already_applied": True}

    try:
        balance_after = await award_credits(
            user_id,
            db,
            amount=session.credits,
            reason="purchase",
            metadata={"provider": session.provider, "billing_reference": session.id},
            budget=budget,
            commit=False,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Redeemed checkout session %s: %s credits for user %s", session.id, session.credits, user_id)
    return {"ok": True, "credits_added": session.credits, "balance_after": balance_after, "already_applied": False}
