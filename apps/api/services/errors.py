"""Typed gate rejections raised by the metering services."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from fastapi import HTTPException


class MeteringError(HTTPException):
    """Base class: an HTTPException whose detail carries a machine-readable code."""

    code = "metering_error"
    http_status = 429

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: Optional[float] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.retry_after_seconds = (
            max(int(math.ceil(retry_after_seconds)), 1) if retry_after_seconds is not None else None
        )
        detail: Dict[str, Any] = {"code": self.code, "message": message}
        if self.retry_after_seconds is not None:
            detail["retry_after_seconds"] = self.retry_after_seconds
        if extra:
            detail.update(extra)
        headers = {"Retry-After": str(self.retry_after_seconds)} if self.retry_after_seconds is not None else None
        super().__init__(status_code=self.http_status, detail=detail, headers=headers)


class InsufficientCredits(MeteringError):
    code = "insufficient_credits"
    http_status = 402

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough credits. Need {required}, have {available}. Earn more or upgrade to Premium!",
            extra={"required": required, "available": available},
        )


class RateLimitExceeded(MeteringError):
    code = "rate_limit_exceeded"

    def __init__(self, action_type: str, window: str, limit: int, retry_after_seconds: float):
        self.action_type = action_type
        self.window = window
        self.limit = limit
        super().__init__(
            f"Rate limit: {limit} {action_type} requests per {_WINDOW_NOUNS[window]}. "
            f"Resets in {_humanize(retry_after_seconds)}.",
            retry_after_seconds=retry_after_seconds,
            extra={"action_type": action_type, "window": window, "limit": limit},
        )


class SpendCeilingExceeded(MeteringError):
    code = "spend_ceiling_exceeded"

    def __init__(self, window: str, ceiling_usd: float, retry_after_seconds: float):
        self.window = window
        self.ceiling_usd = ceiling_usd
        self.code = f"{window}_limit_exceeded"
        message = f"{window.capitalize()} spending limit reached (${ceiling_usd:.2f}). "
        if window == "monthly":
            message += "Please upgrade your plan."
        else:
            message += f"Resets in {_humanize(retry_after_seconds)}."
        super().__init__(
            message,
            retry_after_seconds=retry_after_seconds,
            extra={"window": window, "ceiling_usd": ceiling_usd},
        )


class GlobalSpendCeilingExceeded(MeteringError):
    code = "global_capacity_exceeded"
    http_status = 503

    def __init__(self, window: str, retry_after_seconds: float):
        self.window = window
        super().__init__(
            "System is experiencing high demand. Please try again in a few minutes.",
            retry_after_seconds=retry_after_seconds,
        )


class EmergencyStop(MeteringError):
    code = "service_unavailable"
    http_status = 503

    def __init__(self):
        super().__init__("Service temporarily unavailable. Please try again later.")


class DuplicateRequest(MeteringError):
    code = "duplicate_request"
    http_status = 409

    def __init__(self, retry_after_seconds: float):
        super().__init__(
            f"Duplicate request detected. Please wait {max(int(math.ceil(retry_after_seconds)), 1)} seconds.",
            retry_after_seconds=retry_after_seconds,
        )


class QueryBudgetExceeded(MeteringError):
    """Fatal: a handler performed more ledger operations than allowed."""

    code = "internal_error"
    http_status = 500

    def __init__(self, max_operations: int, operations: List[Dict[str, Any]]):
        self.max_operations = max_operations
        self.operations = operations
        super().__init__("Internal error. Please contact support.")


class AlreadyCheckedIn(MeteringError):
    code = "already_checked_in"
    http_status = 409

    def __init__(self, retry_after_seconds: float):
        super().__init__(
            "Already checked in today! Come back tomorrow for your streak.",
            retry_after_seconds=retry_after_seconds,
        )


class CollectionLimitReached(MeteringError):
    code = "collection_limit_reached"
    http_status = 403

    def __init__(self, tier: str, limit: int):
        self.limit = limit
        if tier == "free":
            message = f"Collection limit reached ({limit} crystals). Upgrade to Premium for more storage!"
        else:
            message = "Collection limit reached. Contact support to increase limit."
        super().__init__(message, extra={"limit": limit})


class AnalysisTimeout(MeteringError):
    code = "analysis_timeout"
    http_status = 504

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Analysis did not finish within {timeout_seconds:g} seconds. No credits were used.")


_WINDOW_NOUNS = {"hourly": "hour", "daily": "day", "monthly": "month"}


def _humanize(seconds: float) -> str:
    seconds = max(int(math.ceil(seconds)), 1)
    if seconds < 60:
        return f"{seconds} seconds"
    minutes = int(math.ceil(seconds / 60))
    if minutes < 120:
        return f"{minutes} minutes"
    return f"{int(math.ceil(minutes / 60))} hours"
