"""Redeemed payment checkout sessions."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditPurchase(Base):
    """One row per paid checkout session; the primary key blocks a second redemption."""

    __tablename__ = "credit_purchases"

    session_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, default="stripe")
    credits = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
