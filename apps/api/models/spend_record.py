"""Actual cost of completed external analysis calls."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Integer, String

from database import Base


class SpendRecord(Base):
    """Append-only record pairing the estimated and reported cost of one call."""

    __tablename__ = "spend_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    operation_type = Column(String, nullable=False)
    estimated_micros = Column(BigInteger, nullable=False)
    actual_micros = Column(BigInteger, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
