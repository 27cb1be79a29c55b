"""Short-window duplicate submission guard."""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Optional, Union

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.request_dedupe import RequestDedupe
from services.errors import DuplicateRequest
from services.query_budget import QueryBudget, track

logger = logging.getLogger(__name__)

FINGERPRINT_PREFIX_BYTES = 500


def request_fingerprint(payload: Union[bytes, str], prefix_length: int = FINGERPRINT_PREFIX_BYTES) -> str:
    """Stable 16-hex-char SHA-256 fingerprint of the first ``prefix_length`` bytes."""
    data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    return hashlib.sha256(data[:prefix_length]).hexdigest()[:16]


async def check_and_mark(
    user_id: str,
    fingerprint: str,
    db: AsyncSession,
    *,
    window_seconds: float,
    budget: Optional[QueryBudget] = None,
    now: Optional[float] = None,
) -> None:
    """Mark ``fingerprint`` as seen, or raise DuplicateRequest if it was seen within the window.

    A stale marker is deleted before the insert, so an old marker can never
    block indefinitely. The primary key allows only one live marker per pair.
    """
    current_time = now if now is not None else time.time()
    keys = (RequestDedupe.user_id == user_id, RequestDedupe.fingerprint == fingerprint)
    track(budget, "write", "request_dedupe")

    await db.execute(
        delete(RequestDedupe)
        .where(*keys, RequestDedupe.created_at <= current_time - window_seconds)
        .execution_options(synchronize_session=False)
    )
    try:
        async with db.begin_nested():
            await db.execute(
                insert(RequestDedupe).values(
                    user_id=user_id,
                    fingerprint=fingerprint,
                    created_at=current_time,
                    expires_at=current_time + window_seconds,
                )
            )
    except IntegrityError:
        existing = await db.execute(select(RequestDedupe.created_at).where(*keys))
        created_at = existing.scalar_one_or_none()
        await db.rollback()
        age = current_time - float(created_at if created_at is not None else current_time)
        logger.info("duplicate_request user=%s fingerprint=%s age=%.1fs", user_id, fingerprint, age)
        raise DuplicateRequest(window_seconds - age)

    await db.commit()


async def purge_expired_markers(db: AsyncSession, *, now: Optional[float] = None) -> int:
    """Delete every marker past its expiry; returns the number removed."""
    current_time = now if now is not None else time.time()
    result = await db.execute(
        delete(RequestDedupe)
        .where(RequestDedupe.expires_at <= current_time)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)
