"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from database import Base


class User(Base):
    """Identity-provider user with the externally resolved subscription tier."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    subscription_tier = Column(String, nullable=False, default="free", server_default="free")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
