"""Request normalization: type resolution, field kinds, implicit targets."""

from __future__ import annotations

import pytest
from safe_outputs_mcp.config import ActionType, LimitsConfig
from safe_outputs_mcp.context import RunContext
from safe_outputs_mcp.errors import ValidationError
from safe_outputs_mcp.request import normalize_request, resolve_action_type

CLOSE_FIELDS = ("body", "pull_request_number")
LABEL_FIELDS = ("labels", "item_number")


def _normalize(action_type: ActionType, arguments: dict, context: RunContext, allowed=CLOSE_FIELDS, limits=None):
    return normalize_request(
        action_type,
        arguments,
        context=context,
        allowed_fields=allowed,
        limits=limits or LimitsConfig(),
        correlation_id="cid",
    )


def test_resolve_action_type_accepts_both_separators() -> None:
    enabled = (ActionType.CLOSE_PULL_REQUEST,)
    assert resolve_action_type("close_pull_request", enabled) is ActionType.CLOSE_PULL_REQUEST
    assert resolve_action_type("close-pull-request", enabled) is ActionType.CLOSE_PULL_REQUEST


def test_resolve_action_type_unknown() -> None:
    with pytest.raises(ValidationError) as exc:
        resolve_action_type("merge_pull_request", (ActionType.NOOP,))
    assert exc.value.message == "Unknown safe output type: merge_pull_request"
    assert exc.value.hint == "Available types: noop"


def test_resolve_action_type_not_enabled() -> None:
    with pytest.raises(ValidationError, match="'create_issue' is not enabled"):
        resolve_action_type("create_issue", (ActionType.NOOP,))


def test_triggering_pull_request_is_default_target(pr_context: RunContext) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x"}, pr_context)

    assert request.pull_request_number == 100
    assert request.correlation_id == "cid"
    assert request.run_id == "42"
    assert request.triggering_number == 100


def test_explicit_target_wins_over_context(pr_context: RunContext) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x", "pull_request_number": 7}, pr_context)
    assert request.pull_request_number == 7


def test_issue_context_does_not_target_pull_request(issue_context: RunContext) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x"}, issue_context)
    assert request.pull_request_number is None


def test_item_number_defaults_to_any_triggering_entity(issue_context: RunContext) -> None:
    request = _normalize(ActionType.ADD_LABELS, {"labels": ["bug"]}, issue_context, allowed=LABEL_FIELDS)
    assert request.item_number == 7


@pytest.mark.parametrize("raw", ["55", "#55", 55])
def test_integer_fields_accept_digit_strings(pr_context: RunContext, raw: object) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"pull_request_number": raw}, pr_context)
    assert request.pull_request_number == 55


@pytest.mark.parametrize("raw", ["invalid", 0, -3, True, 1.5])
def test_invalid_integer_is_rejected(pr_context: RunContext, raw: object) -> None:
    with pytest.raises(ValidationError, match="Invalid pull request number"):
        _normalize(ActionType.CLOSE_PULL_REQUEST, {"pull_request_number": raw}, pr_context)


def test_invalid_number_message(pr_context: RunContext) -> None:
    with pytest.raises(ValidationError) as exc:
        _normalize(ActionType.CLOSE_PULL_REQUEST, {"pull_request_number": "invalid"}, pr_context)
    assert exc.value.message == "Invalid pull request number: invalid"


def test_unexpected_fields_rejected(pr_context: RunContext) -> None:
    with pytest.raises(ValidationError, match="Unexpected fields for close_pull_request: repo"):
        _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x", "repo": "other/repo"}, pr_context)


def test_type_key_in_payload_is_tolerated(pr_context: RunContext) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"type": "close_pull_request", "body": "x"}, pr_context)
    assert request.type is ActionType.CLOSE_PULL_REQUEST


def test_wrong_kind_rejected(pr_context: RunContext) -> None:
    with pytest.raises(ValidationError, match="Field 'body' must be a string"):
        _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": ["x"]}, pr_context)


def test_labels_are_trimmed_and_deduplicated(pr_context: RunContext) -> None:
    request = _normalize(ActionType.ADD_LABELS, {"labels": [" bug", "bug ", "", "ui"]}, pr_context, allowed=LABEL_FIELDS)
    assert request.labels == ("bug", "ui")


def test_credential_field_rejected(pr_context: RunContext) -> None:
    with pytest.raises(ValidationError, match="Credential-like fields are not allowed"):
        _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x", "token": "abc"}, pr_context)


def test_oversize_body_rejected(pr_context: RunContext) -> None:
    limits = LimitsConfig(body_max_bytes=10)
    with pytest.raises(ValidationError, match="Body exceeds size limit of 10 bytes"):
        _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x" * 11}, pr_context, limits=limits)


def test_too_many_labels_rejected(pr_context: RunContext) -> None:
    limits = LimitsConfig(max_labels=2)
    with pytest.raises(ValidationError, match="Too many labels"):
        _normalize(ActionType.ADD_LABELS, {"labels": ["a", "b", "c"]}, pr_context, allowed=LABEL_FIELDS, limits=limits)


def test_fields_map_keeps_order_and_stringifies(pr_context: RunContext) -> None:
    request = _normalize(
        ActionType.UPDATE_PROJECT,
        {"content_type": "draft_issue", "fields": {"Status": "Todo", "Estimate": 3}},
        pr_context,
        allowed=("content_type", "fields"),
    )
    assert list(request.fields.items()) == [("Status", "Todo"), ("Estimate", "3")]


def test_request_is_immutable(pr_context: RunContext) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x"}, pr_context)
    with pytest.raises(AttributeError):
        request.body = "changed"  # type: ignore[misc]


def test_project_fields_cannot_be_mutated(pr_context: RunContext) -> None:
    request = _normalize(
        ActionType.UPDATE_PROJECT,
        {"content_type": "draft_issue", "fields": {"Status": "Todo"}},
        pr_context,
        allowed=("content_type", "fields"),
    )
    with pytest.raises(TypeError):
        request.fields["Status"] = "Done"  # type: ignore[index]
    assert request.to_dict()["fields"] == {"Status": "Todo"}
    unset = _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x"}, pr_context)
    with pytest.raises(TypeError):
        unset.fields["Status"] = "Done"  # type: ignore[index]


def test_to_dict_omits_unset_fields(pr_context: RunContext) -> None:
    request = _normalize(ActionType.CLOSE_PULL_REQUEST, {"body": "x"}, pr_context)
    assert request.to_dict() == {
        "type": "close-pull-request",
        "run_id": "42",
        "triggering_number": 100,
        "body": "x",
        "pull_request_number": 100,
    }
