"""Credit balance and append-only credit transaction models."""

from datetime import datetime, timezone

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Current credit balance for one user."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balances_balance_non_negative"),
        CheckConstraint("balance = total_earned - total_spent", name="ck_credit_balances_conservation"),
    )

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    metadata_json = Column(JSON, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
