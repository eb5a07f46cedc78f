"""Admission control: per-type invocation ceilings for the lifetime of one run.

Counters live on an explicit per-run object. Each type has its own lock so the
compare-then-increment is atomic when the agent issues parallel tool calls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .config import ActionType
from .errors import PolicyViolation

logger = logging.getLogger(__name__)


class AdmissionController:
    """Tracks accepted requests per action type."""

    def __init__(self) -> None:
        self._counts: dict[ActionType, int] = {}
        self._locks: dict[ActionType, asyncio.Lock] = {}

    def _lock(self, action_type: ActionType) -> asyncio.Lock:
        lock = self._locks.get(action_type)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[action_type] = lock
        return lock

    def count(self, action_type: ActionType) -> int:
        """Accepted requests so far for a type."""
        return self._counts.get(action_type, 0)

    def snapshot(self) -> dict[str, int]:
        """Accepted counts keyed by type name."""
        return {t.value: n for t, n in self._counts.items()}

    @asynccontextmanager
    async def holding(self, action_type: ActionType) -> AsyncIterator[None]:
        """Hold the type's lock; checks made inside see a stable count."""
        async with self._lock(action_type):
            yield

    def check(self, action_type: ActionType, maximum: int) -> None:
        """Raise PolicyViolation if the ceiling is reached. Call while holding the lock."""
        current = self._counts.get(action_type, 0)
        if current >= maximum:
            logger.info("Rejected %s: max count %s reached", action_type.value, maximum)
            raise PolicyViolation(f"Max count ({maximum}) exceeded for {action_type.tool_name}")

    def record(self, action_type: ActionType) -> int:
        """Count one accepted request. Call while holding the lock."""
        current = self._counts.get(action_type, 0) + 1
        self._counts[action_type] = current
        return current
