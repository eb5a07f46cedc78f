"""Request normalization.

Turns a raw tool-call payload into a typed, immutable `SafeOutputRequest`:
- resolves the discriminant against the configured closed set
- rejects unexpected fields, wrong field kinds, and credential-like inputs
- coerces numeric strings, trims and de-duplicates labels
- fills omitted targets from the run context
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields as dataclass_fields
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .config import ActionType, LimitsConfig
from .context import RunContext
from .errors import ValidationError
from .safety import enforce_max_bytes, validate_no_secrets

_STRING = "string"
_INTEGER = "integer"
_BOOLEAN = "boolean"
_STRING_LIST = "string_list"
_STRING_MAP = "string_map"

_FIELD_KINDS: dict[str, str] = {
    "title": _STRING,
    "body": _STRING,
    "labels": _STRING_LIST,
    "item_number": _INTEGER,
    "issue_number": _INTEGER,
    "pull_request_number": _INTEGER,
    "branch": _STRING,
    "base": _STRING,
    "draft": _BOOLEAN,
    "content_type": _STRING,
    "content_number": _INTEGER,
    "draft_title": _STRING,
    "draft_body": _STRING,
    "fields": _STRING_MAP,
    "project": _STRING,
    "status": _STRING,
    "start_date": _STRING,
    "target_date": _STRING,
    "message": _STRING,
}

_TITLE_FIELDS = frozenset({"title", "draft_title"})
_BODY_FIELDS = frozenset({"body", "draft_body", "message"})


def new_correlation_id() -> str:
    """Generate a random correlation id for traceability."""
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class SafeOutputRequest:
    """One proposed action, normalized. Never mutated after construction."""

    type: ActionType
    correlation_id: str
    run_id: str | None = None
    triggering_number: int | None = None

    title: str | None = None
    body: str | None = None
    labels: tuple[str, ...] = ()
    item_number: int | None = None
    issue_number: int | None = None
    pull_request_number: int | None = None
    branch: str | None = None
    base: str | None = None
    draft: bool | None = None
    content_type: str | None = None
    content_number: int | None = None
    draft_title: str | None = None
    draft_body: str | None = None
    fields: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    project: str | None = None
    status: str | None = None
    start_date: str | None = None
    target_date: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Payload fields that were set, for the audit log."""
        out: dict[str, Any] = {"type": self.type.value}
        for f in dataclass_fields(self):
            if f.name in ("type", "correlation_id"):
                continue
            value = getattr(self, f.name)
            if value is None or value == () or value == {}:
                continue
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, Mapping):
                value = dict(value)
            out[f.name] = value
        return out


def _human(name: str) -> str:
    return name.replace("_", " ")


def _coerce_int(name: str, value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {_human(name)}: {value}")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().lstrip("#").isdigit():
        number = int(value.strip().lstrip("#"))
    else:
        raise ValidationError(f"Invalid {_human(name)}: {value}")
    if number < 1:
        raise ValidationError(f"Invalid {_human(name)}: {value}")
    return number


def _coerce_labels(name: str, value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValidationError(f"Field '{name}' must be an array of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"Field '{name}' must be an array of strings")
        label = item.strip()
        if label and label not in out:
            out.append(label)
    return tuple(out)


def _coerce_map(name: str, value: object) -> Mapping[str, str]:
    if not isinstance(value, dict):
        raise ValidationError(f"Field '{name}' must be an object of string values")
    out: dict[str, str] = {}
    for key, raw in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(f"Field '{name}' has an empty key")
        if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
            raise ValidationError(f"Field '{name}.{key}' must be a string")
        out[key.strip()] = str(raw)
    return MappingProxyType(out)


def _coerce(name: str, kind: str, value: object) -> Any:
    if kind == _INTEGER:
        return _coerce_int(name, value)
    if kind == _STRING_LIST:
        return _coerce_labels(name, value)
    if kind == _STRING_MAP:
        return _coerce_map(name, value)
    if kind == _BOOLEAN:
        if not isinstance(value, bool):
            raise ValidationError(f"Field '{name}' must be a boolean")
        return value
    if not isinstance(value, str):
        raise ValidationError(f"Field '{name}' must be a string")
    return value


def resolve_action_type(raw_type: object, enabled: Iterable[ActionType]) -> ActionType:
    """Resolve a discriminant against the enabled closed set.

    Raises:
        ValidationError: If the type is unknown or not enabled for this run.
    """
    enabled_set = tuple(enabled)
    available = ", ".join(t.tool_name for t in enabled_set)
    action_type = ActionType.from_wire(raw_type)
    if action_type is None:
        raise ValidationError(f"Unknown safe output type: {raw_type}", hint=f"Available types: {available}")
    if action_type not in enabled_set:
        raise ValidationError(
            f"Safe output type '{action_type.tool_name}' is not enabled for this workflow",
            hint=f"Available types: {available}",
        )
    return action_type


def _default_target(action_type: ActionType, values: dict[str, Any], context: RunContext) -> None:
    if action_type is ActionType.CLOSE_PULL_REQUEST:
        if values.get("pull_request_number") is None:
            values["pull_request_number"] = context.triggering_pull_request
    elif action_type is ActionType.CLOSE_ISSUE:
        if values.get("issue_number") is None:
            values["issue_number"] = context.triggering_issue
    elif action_type in (ActionType.ADD_COMMENT, ActionType.ADD_LABELS, ActionType.REMOVE_LABELS):
        if values.get("item_number") is None:
            values["item_number"] = context.triggering_number


def normalize_request(
    action_type: ActionType,
    arguments: Mapping[str, Any],
    *,
    context: RunContext,
    allowed_fields: Iterable[str],
    limits: LimitsConfig,
    correlation_id: str | None = None,
) -> SafeOutputRequest:
    """Convert a raw payload into a SafeOutputRequest.

    Raises:
        ValidationError: On unexpected fields, wrong kinds, oversize text, or secrets.
    """
    validate_no_secrets(dict(arguments))

    allowed = set(allowed_fields)
    extras = sorted(k for k in arguments if k not in allowed and k != "type")
    if extras:
        raise ValidationError(
            f"Unexpected fields for {action_type.tool_name}: {', '.join(extras)}",
            hint=f"Allowed fields: {', '.join(sorted(allowed))}",
        )

    values: dict[str, Any] = {}
    for name, raw in arguments.items():
        if name == "type" or raw is None:
            continue
        kind = _FIELD_KINDS.get(name)
        if kind is None:
            raise ValidationError(f"Unsupported field: {name}")
        values[name] = _coerce(name, kind, raw)

    for name in _TITLE_FIELDS & values.keys():
        enforce_max_bytes(text=values[name], max_bytes=limits.title_max_bytes, what=_human(name).capitalize())
    for name in _BODY_FIELDS & values.keys():
        enforce_max_bytes(text=values[name], max_bytes=limits.body_max_bytes, what=_human(name).capitalize())
    if len(values.get("labels", ())) > limits.max_labels:
        raise ValidationError(f"Too many labels (limit {limits.max_labels})")
    if len(values.get("fields", {})) > limits.max_fields:
        raise ValidationError(f"Too many project fields (limit {limits.max_fields})")

    _default_target(action_type, values, context)

    return SafeOutputRequest(
        type=action_type,
        correlation_id=correlation_id or new_correlation_id(),
        run_id=context.run_id,
        triggering_number=context.triggering_number,
        **values,
    )
