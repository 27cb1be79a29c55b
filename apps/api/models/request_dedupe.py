"""Short-lived duplicate submission markers."""

from sqlalchemy import Column, Float, String

from database import Base


class RequestDedupe(Base):
    """Marker for a (user, content fingerprint) pair seen recently."""

    __tablename__ = "request_dedupe"

    user_id = Column(String, primary_key=True)
    fingerprint = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)
