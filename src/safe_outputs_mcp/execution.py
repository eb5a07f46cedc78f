"""Execution results and the partial-failure policy.

The primary effect of a request decides `success`. Secondary effects (comments,
labels on a new pull request, housekeeping on older items) are best-effort:
their failures are logged and reported in `secondary_errors` but never flip
the overall result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Mapping, TypeVar

from .errors import CODE_POLICY, CODE_VALIDATION, ExecutionError, SafeError, describe_external_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one request, returned to the caller and written to the audit log."""

    success: bool
    details: Mapping[str, Any] = field(default_factory=dict)
    secondary_errors: tuple[str, ...] = ()

    @classmethod
    def ok(cls, details: Mapping[str, Any] | None = None, secondary_errors: list[str] | tuple[str, ...] = ()) -> ExecutionResult:
        return cls(success=True, details=dict(details or {}), secondary_errors=tuple(secondary_errors))

    def to_dict(self) -> dict[str, Any]:
        """Outbound result shape."""
        out: dict[str, Any] = {"success": self.success}
        out.update(self.details)
        if self.secondary_errors:
            out["secondary_errors"] = list(self.secondary_errors)
        return out


async def run_primary(context: str, call: Awaitable[T]) -> T:
    """Await a primary external call, translating failures into ExecutionError.

    The external system's message is kept verbatim after the layer's context.
    Validation and policy errors raised by the call pass through unchanged.
    """
    try:
        return await call
    except SafeError as err:
        if err.code in (CODE_VALIDATION, CODE_POLICY) or isinstance(err, ExecutionError):
            raise
        raise ExecutionError(f"{context}: {describe_external_error(err)}", status_code=err.status_code) from err
    except Exception as exc:  # pylint: disable=broad-exception-caught
        raise ExecutionError(f"{context}: {describe_external_error(exc)}") from exc


class SecondaryEffects:
    """Collects the outcome of best-effort effects for one request."""

    def __init__(self, correlation_id: str) -> None:
        self._correlation_id = correlation_id
        self.errors: list[str] = []

    async def attempt(self, description: str, call: Awaitable[T]) -> tuple[bool, T | None]:
        """Await a secondary effect; return (succeeded, value) and never raise."""
        try:
            return True, await call
        except Exception as exc:  # pylint: disable=broad-exception-caught
            text = f"Failed to {description}: {describe_external_error(exc)}"
            logger.error("[%s] %s", self._correlation_id, text)
            self.errors.append(text)
            return False, None
