"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_history, get_credit_summary
from services.payments import StripeCheckoutProvider, get_payment_provider, redeem_checkout_session
from services.query_budget import QueryBudget, get_query_budget
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(default=25, ge=1, le=10000)


class CheckoutConfirmRequest(BaseModel):
    session_id: str = Field(min_length=1)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return await get_credit_summary(scoped_user_id, db, budget=budget)


@router.get("/credits/history")
async def credits_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    entries = await get_credit_history(scoped_user_id, db, limit=limit, budget=budget)
    return {"user_id": scoped_user_id, "entries": entries, "count": len(entries)}


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    provider: StripeCheckoutProvider = Depends(get_payment_provider),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    session = await provider.create_session(scoped_user_id, request.credits)
    logger.info("Checkout session %s started for %s credits (user %s)", session.id, request.credits, scoped_user_id)
    return {
        "session_id": session.id,
        "checkout_url": session.url,
        "user_id": scoped_user_id,
        "credits": request.credits,
    }


@router.post("/checkout/confirm")
async def confirm_checkout_session(
    request: CheckoutConfirmRequest,
    _rate_limit: None = Depends(rate_limit("billing_confirm", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    provider: StripeCheckoutProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
    budget: QueryBudget = Depends(get_query_budget),
):
    """Credit a paid checkout session once the provider reports it paid."""
    session = await provider.retrieve_session(request.session_id)
    await ensure_user(db, auth.user_id, auth.email)
    return await redeem_checkout_session(auth.user_id, session, db, budget=budget)
