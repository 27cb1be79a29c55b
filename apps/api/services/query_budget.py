"""Per-request ceiling on ledger operations."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from config import settings
from services.errors import QueryBudgetExceeded

logger = logging.getLogger(__name__)


class QueryBudget:
    """In-memory operation counter scoped to a single handler invocation.

    Guards against an unbounded loop silently running up database cost and
    latency. Nothing is persisted and nothing is shared across requests.
    """

    def __init__(self, max_operations: Optional[int] = None):
        self.max_operations = int(max_operations if max_operations is not None else settings.QUERY_BUDGET_MAX)
        self.operations: List[Dict[str, Any]] = []

    @property
    def count(self) -> int:
        return len(self.operations)

    def track(self, operation_kind: str, resource_name: str) -> None:
        self.operations.append(
            {"operation": operation_kind, "resource": resource_name, "timestamp": time.time()}
        )
        if self.count > self.max_operations:
            logger.error(
                "Query budget exceeded: %s operations (max %s): %s",
                self.count,
                self.max_operations,
                self.operations,
            )
            raise QueryBudgetExceeded(self.max_operations, list(self.operations))

    def stats(self) -> Dict[str, Any]:
        return {"total": self.count, "max": self.max_operations, "operations": list(self.operations)}


def track(budget: Optional[QueryBudget], operation_kind: str, resource_name: str) -> None:
    """Track on ``budget`` when one was supplied."""
    if budget is not None:
        budget.track(operation_kind, resource_name)


def get_query_budget() -> QueryBudget:
    """FastAPI dependency: a fresh budget per request."""
    return QueryBudget()
