"""Append-only audit log.

Exactly one JSON line per processed request, in arrival order, written before the
result is returned to the caller. Entries are never edited and the file is never
rotated: downstream tooling reads the whole file after the run. Secret material
is redacted before anything is written.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .safety import redact_value

logger = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"

STAGE_NORMALIZATION = "normalization"
STAGE_VALIDATION = "validation"
STAGE_POLICY = "policy"
STAGE_ADMISSION = "admission"
STAGE_SCOPE = "scope"
STAGE_EXECUTION = "execution"


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """A single audit entry."""

    timestamp: str
    correlation_id: str
    type: str
    request: Mapping[str, Any]
    outcome: str
    stage: str | None = None
    reason: str | None = None
    result: Mapping[str, Any] | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "correlation_id": self.correlation_id,
            "type": self.type,
            "request": redact_value(dict(self.request)),
            "outcome": self.outcome,
        }
        if self.stage is not None:
            payload["stage"] = self.stage
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.result is not None:
            payload["result"] = redact_value(dict(self.result))
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


def build_entry(
    *,
    correlation_id: str,
    action_type: str,
    request: Mapping[str, Any],
    outcome: str,
    stage: str | None = None,
    reason: str | None = None,
    result: Mapping[str, Any] | None = None,
    duration_ms: int | None = None,
) -> AuditEntry:
    """Construct an audit entry stamped with the current time."""
    return AuditEntry(
        timestamp=_now_rfc3339(),
        correlation_id=correlation_id,
        type=action_type,
        request=request,
        outcome=outcome,
        stage=stage,
        reason=reason,
        result=result,
        duration_ms=duration_ms,
    )


class AppendLog:
    """Writes audit entries as JSONL to stderr and optionally to a file.

    A single lock serializes appends so lines from concurrent requests never
    interleave.
    """

    def __init__(self, *, sink_path: Path | None, mirror_to_stderr: bool = True) -> None:
        self._sink_path = sink_path
        self._mirror = mirror_to_stderr
        self._lock = threading.Lock()

    @property
    def sink_path(self) -> Path | None:
        return self._sink_path

    def append(self, entry: AuditEntry) -> None:
        """Append one entry."""
        line = json.dumps(entry.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        with self._lock:
            if self._mirror:
                print(line, file=sys.stderr)
            if self._sink_path is None:
                return
            try:
                self._sink_path.parent.mkdir(parents=True, exist_ok=True)
                with self._sink_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as exc:
                logger.error("Failed to write audit entry %s: %s", entry.correlation_id, exc)

    def read_entries(self) -> list[dict[str, Any]]:
        """Read back every entry in append order."""
        if self._sink_path is None or not self._sink_path.exists():
            return []
        with self._lock:
            text = self._sink_path.read_text(encoding="utf-8")
        return [json.loads(line) for line in text.splitlines() if line.strip()]

    def measure_start(self) -> float:
        """Return a monotonic start timestamp for duration measurement."""
        return time.monotonic()

    def measure_duration_ms(self, start: float) -> int:
        """Convert a monotonic start timestamp into elapsed milliseconds."""
        return int((time.monotonic() - start) * 1000)
