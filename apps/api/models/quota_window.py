"""Hour/day/month quota window counters for spend and request metering."""

from sqlalchemy import BigInteger, Column, DateTime, Float, String
from sqlalchemy.sql import func

from database import Base


class QuotaWindowMixin:
    """Counters plus the epoch timestamp at which each window last reset."""

    hourly = Column(BigInteger, nullable=False, default=0)
    daily = Column(BigInteger, nullable=False, default=0)
    monthly = Column(BigInteger, nullable=False, default=0)
    last_hour_reset = Column(Float, nullable=False, default=0.0)
    last_day_reset = Column(Float, nullable=False, default=0.0)
    last_month_reset = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SpendWindow(QuotaWindowMixin, Base):
    """Spend in micro-dollars for one user scope (``user:<id>``) or the ``global`` scope."""

    __tablename__ = "spend_windows"

    scope = Column(String, primary_key=True)
    total = Column(BigInteger, nullable=False, default=0)
    daily_alert_sent_at = Column(Float, nullable=True)
    monthly_alert_sent_at = Column(Float, nullable=True)


class RateWindow(QuotaWindowMixin, Base):
    """Request counts for one user and action type."""

    __tablename__ = "rate_windows"

    user_id = Column(String, primary_key=True)
    action_type = Column(String, primary_key=True)
