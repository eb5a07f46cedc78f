"""Safe error types and serialization helpers.

Errors returned to the agent must be non-secret, specific and actionable so the
agent can correct its next call without operator intervention.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CODE_VALIDATION = "Validation"
CODE_POLICY = "Policy"
CODE_EXECUTION = "Execution"
CODE_CONFIG = "Config"


@dataclass(frozen=True, slots=True)
class SafeError(Exception):
    """An error safe to expose to agents.

    This must never include secrets (tokens, private key content, key path).
    """

    code: str
    message: str
    hint: str | None = None
    status_code: int | None = None

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}: {self.hint}"
        return self.message


class ValidationError(SafeError):
    """Malformed or missing required fields, unresolved target or scope."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(code=CODE_VALIDATION, message=message, hint=hint)


class PolicyViolation(SafeError):
    """Content filter mismatch or admission ceiling exceeded."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(code=CODE_POLICY, message=message, hint=hint)


class ExecutionError(SafeError):
    """The primary effect failed against the external system."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(code=CODE_EXECUTION, message=message, status_code=status_code)


class FatalConfigError(SafeError):
    """Missing or invalid configuration detected before any request is processed."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(code=CODE_CONFIG, message=message, hint=hint)


def github_auth_forbidden(*, status_code: int, detail: str | None = None) -> SafeError:
    """Return a safe Forbidden error for GitHub auth/revocation failures.

    `detail` is GitHub's own message; without one the hint names the status.
    """
    return SafeError(
        code="Forbidden",
        message="GitHub token is not authorized for this repository or operation",
        hint=detail or f"HTTP {status_code}",
        status_code=status_code,
    )


def describe_external_error(exc: BaseException) -> str:
    """Return the external system's own message for an error, verbatim where possible."""
    if isinstance(exc, SafeError):
        if exc.hint:
            return exc.hint
        return exc.message
    text = str(exc)
    return text or type(exc).__name__


def to_error_result(message: str, *, code: str | None = None) -> dict[str, Any]:
    """Build the outbound failure envelope."""
    out: dict[str, Any] = {"success": False, "error": message}
    if code:
        out["code"] = code
    return out


def safe_error_to_result(err: SafeError) -> dict[str, Any]:
    """Convert a SafeError into the outbound failure envelope."""
    return to_error_result(str(err), code=err.code)


def internal_error(message: str = "Internal error") -> dict[str, Any]:
    """Error for unexpected failures."""
    return to_error_result(message, code="Internal")
