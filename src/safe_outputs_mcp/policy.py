"""Policy evaluation.

Content filters applied independently of structural validity:
- required labels on the target (ANY-match)
- required title prefix on the target
- label allow-list for labels the agent asks to add or remove
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .errors import PolicyViolation


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Policy decision result."""

    allowed: bool
    reason: str | None = None

    def raise_if_denied(self) -> None:
        """Raise PolicyViolation carrying the reason when the decision denies."""
        if not self.allowed:
            raise PolicyViolation(self.reason or "Request denied by policy")


ALLOW = PolicyDecision(True)


def _format_labels(labels: Iterable[str]) -> str:
    items = list(labels)
    if not items:
        return "[]"
    return "[" + ", ".join(items) + "]"


def check_required_labels(target_labels: Iterable[str], required: Iterable[str]) -> PolicyDecision:
    """Accept iff the target carries at least one of the required labels.

    An empty requirement accepts everything.
    """
    required_set = set(required)
    if not required_set:
        return ALLOW
    current = list(target_labels)
    if required_set.intersection(current):
        return ALLOW
    return PolicyDecision(False, f"{_format_labels(current)} does not match required labels {_format_labels(sorted(required_set))}")


def check_title_prefix(title: str | None, prefix: str | None) -> PolicyDecision:
    """Accept iff the title starts with the exact prefix (when one is configured)."""
    if not prefix:
        return ALLOW
    if isinstance(title, str) and title.startswith(prefix):
        return ALLOW
    return PolicyDecision(False, f'Title "{title or ""}" does not start with required prefix "{prefix}"')


def check_allowed_labels(requested: Iterable[str], allowed: Iterable[str]) -> PolicyDecision:
    """Accept iff every requested label is in the allow-list (when one is configured)."""
    allowed_set = set(allowed)
    if not allowed_set:
        return ALLOW
    denied = [label for label in requested if label not in allowed_set]
    if not denied:
        return ALLOW
    return PolicyDecision(
        False,
        f"Label(s) not allowed: {', '.join(denied)}. Allowed labels: {', '.join(sorted(allowed_set))}",
    )
