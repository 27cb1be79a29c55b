"""Daily check-in streak state."""

from sqlalchemy import Column, Date, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class Streak(Base):
    """Per-user streak with the monthly freeze allowance."""

    __tablename__ = "streaks"

    user_id = Column(String, primary_key=True)
    tier = Column(String, nullable=False, default="free")
    current = Column(Integer, nullable=False, default=0)
    longest = Column(Integer, nullable=False, default=0)
    total_check_ins = Column(Integer, nullable=False, default=0)
    last_check_in = Column(Date, nullable=True)
    freezes_remaining = Column(Integer, nullable=False, default=0)
    freeze_period_key = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
