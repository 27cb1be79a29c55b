"""Achievement progress counters and one-shot unlocks."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class ActionCounter(Base):
    """Lifetime count of completed gated actions per user."""

    __tablename__ = "action_counters"

    user_id = Column(String, primary_key=True)
    action_type = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AchievementUnlock(Base):
    """An achievement a user has earned; the primary key makes each one single-use."""

    __tablename__ = "achievement_unlocks"

    user_id = Column(String, primary_key=True)
    achievement_id = Column(String, primary_key=True)
    credits = Column(Integer, nullable=False, default=0)
    metadata_json = Column(JSON, nullable=True)
    unlocked_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
