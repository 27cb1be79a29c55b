"""Hour/day/month quota windows with lazy, timer-free resets.

Shared by the spend governor (micro-dollar amounts) and the rate limiter
(request counts). A consume is a single conditional UPDATE: the SET clause
resets any window whose boundary has passed and adds the amount in the same
statement, and the WHERE clause requires every capped window to stay within
its ceiling. A rejected consume therefore changes nothing, and no reader can
observe a window that was reset without the current contribution applied.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import case, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.tiers import WindowCeilings


HOUR_SECONDS = 3600
DAY_SECONDS = 86400
WINDOWS = ("hourly", "daily", "monthly")
RESET_COLUMNS = {"hourly": "last_hour_reset", "daily": "last_day_reset", "monthly": "last_month_reset"}


@dataclass(frozen=True)
class WindowSnapshot:
    """Counters as they would read after applying any due resets."""

    hourly: int = 0
    daily: int = 0
    monthly: int = 0
    last_hour_reset: float = 0.0
    last_day_reset: float = 0.0
    last_month_reset: float = 0.0

    def value(self, window: str) -> int:
        return getattr(self, window)

    def last_reset(self, window: str) -> float:
        return getattr(self, RESET_COLUMNS[window])


def _month_start(current: datetime) -> datetime:
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def month_start(now: float) -> float:
    return _month_start(datetime.fromtimestamp(now, tz=timezone.utc)).timestamp()


def next_month_start(now: float) -> float:
    start = _month_start(datetime.fromtimestamp(now, tz=timezone.utc))
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1).timestamp()
    return start.replace(month=start.month + 1).timestamp()


def window_cutoffs(now: float) -> Dict[str, float]:
    """A window whose last reset is strictly before its cutoff is due for reset."""
    return {
        "hourly": now - HOUR_SECONDS,
        "daily": now - DAY_SECONDS,
        "monthly": month_start(now),
    }


def _key_filter(model, keys: Dict[str, Any]) -> list:
    return [getattr(model, name) == value for name, value in keys.items()]


def _window_columns(model) -> list:
    return [getattr(model, name) for name in (*WINDOWS, *RESET_COLUMNS.values())]


def effective_snapshot(row: Any, now: float) -> WindowSnapshot:
    if row is None:
        return WindowSnapshot(last_hour_reset=now, last_day_reset=now, last_month_reset=now)

    cutoffs = window_cutoffs(now)
    values: Dict[str, Any] = {}
    for window in WINDOWS:
        reset_name = RESET_COLUMNS[window]
        last_reset = float(getattr(row, reset_name) or 0.0)
        if last_reset < cutoffs[window]:
            values[window] = 0
            values[reset_name] = now
        else:
            values[window] = int(getattr(row, window) or 0)
            values[reset_name] = last_reset
    return WindowSnapshot(**values)


def exceeded_window(snapshot: WindowSnapshot, amount: int, ceilings: WindowCeilings) -> Optional[str]:
    """Return the first window that ``amount`` would push past its ceiling."""
    for window in WINDOWS:
        ceiling = ceilings.get(window)
        if ceiling is not None and snapshot.value(window) + amount > ceiling:
            return window
    return None


def seconds_until_reset(snapshot: WindowSnapshot, window: str, now: float) -> float:
    if window == "hourly":
        return max(snapshot.last_hour_reset + HOUR_SECONDS - now, 0.0)
    if window == "daily":
        return max(snapshot.last_day_reset + DAY_SECONDS - now, 0.0)
    return max(next_month_start(now) - now, 0.0)


async def read_window(
    db: AsyncSession,
    model,
    keys: Dict[str, Any],
    *,
    now: Optional[float] = None,
) -> WindowSnapshot:
    """Read-only view of a window row with due resets applied in memory."""
    result = await db.execute(select(*_window_columns(model)).where(*_key_filter(model, keys)))
    return effective_snapshot(result.first(), now if now is not None else time.time())


async def ensure_window_row(db: AsyncSession, model, keys: Dict[str, Any]) -> None:
    """Create the row on first use with every window already due for reset."""
    first_key = getattr(model, next(iter(keys)))
    existing = await db.execute(select(first_key).where(*_key_filter(model, keys)))
    if existing.first() is not None:
        return

    try:
        async with db.begin_nested():
            await db.execute(
                insert(model).values(
                    **keys,
                    hourly=0,
                    daily=0,
                    monthly=0,
                    last_hour_reset=0.0,
                    last_day_reset=0.0,
                    last_month_reset=0.0,
                )
            )
    except IntegrityError:
        # Inserted by a concurrent request; the caller's conditional update applies to that row.
        return


async def consume(
    db: AsyncSession,
    model,
    keys: Dict[str, Any],
    amount: int,
    ceilings: WindowCeilings,
    *,
    now: float,
    extra_values: Optional[Dict[str, Any]] = None,
    extra_conditions: Iterable[Any] = (),
) -> bool:
    """Atomically reset due windows and add ``amount`` if every ceiling still holds.

    Returns False, with nothing written, when any capped window would be exceeded
    or an ``extra_conditions`` clause fails. The caller owns the transaction.
    """
    cutoffs = window_cutoffs(now)
    values: Dict[str, Any] = {}
    conditions = _key_filter(model, keys)

    for window in WINDOWS:
        counter = getattr(model, window)
        reset_column = getattr(model, RESET_COLUMNS[window])
        due = reset_column < cutoffs[window]
        current = case((due, 0), else_=counter)
        values[window] = current + amount
        values[RESET_COLUMNS[window]] = case((due, now), else_=reset_column)
        ceiling = ceilings.get(window)
        if ceiling is not None:
            conditions.append(current + amount <= ceiling)

    if extra_values:
        values.update(extra_values)

    statement = (
        update(model)
        .where(*conditions, *extra_conditions)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(statement)
    return result.rowcount == 1
