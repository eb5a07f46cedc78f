"""Execution handlers for repository-scoped safe outputs.

Every handler implements the same contract:
- `validate(request)`: structural checks, raises ValidationError
- `check_policy(request, api)`: content filters, may read the target
- `resolve_scope(request)`: effective external scope (project handlers only)
- `execute(request, api, admitted)`: primary effect, then best-effort secondary effects
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar

from .config import (
    ActionPolicy,
    ActionType,
    AddCommentPolicy,
    ClosePolicy,
    CreateIssuePolicy,
    CreatePullRequestPolicy,
    LabelsPolicy,
    MessagesConfig,
)
from .context import RunContext
from .errors import ValidationError
from .execution import ExecutionResult, SecondaryEffects, run_primary
from .github_api import GitHubApi
from .messages import render_template, template_values, with_footer, workflow_marker
from .policy import ALLOW, PolicyDecision, check_allowed_labels, check_required_labels, check_title_prefix
from .request import SafeOutputRequest
from .safety import neutralize_mentions
from .scope import ProjectRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PolicyResult:
    """Policy decision plus whatever target state was read to reach it."""

    decision: PolicyDecision
    target: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class Admitted:
    """State carried from validation into execution for an accepted request."""

    target: dict[str, Any] | None = None
    scope: ProjectRef | None = None


def is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def tool_schema(required: list[str], properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "object",
        "required": required,
        "properties": properties,
        "additionalProperties": False,
    }


_LABELS_PROP = {"type": "array", "items": {"type": "string"}}
_NUMBER_PROP = {"type": ["integer", "string"]}


class Handler(abc.ABC):
    """Base class for safe output handlers."""

    action_type: ClassVar[ActionType]
    description: ClassVar[str]
    input_schema: ClassVar[dict[str, Any]]

    def __init__(self, *, policy: ActionPolicy, context: RunContext, messages: MessagesConfig) -> None:
        self.policy = policy
        self.context = context
        self.messages = messages
        self._log_configuration()

    def _log_configuration(self) -> None:
        logger.info("%s handler configured: max=%s", self.action_type.value, self.policy.max)

    @property
    def owner(self) -> str:
        return self.context.owner

    @property
    def repo(self) -> str:
        return self.context.repo

    def compose_body(self, text: str) -> str:
        """Agent text with mentions neutralized, plus footer and workflow marker."""
        return with_footer(neutralize_mentions(text), self.messages, self.context)

    def validate(self, request: SafeOutputRequest) -> None:
        """Structural checks. Raises ValidationError naming the missing field."""

    async def check_policy(self, request: SafeOutputRequest, api: GitHubApi) -> PolicyResult:
        """Content filters. Handlers that need target state read it here."""
        return PolicyResult(ALLOW)

    def resolve_scope(self, request: SafeOutputRequest) -> ProjectRef | None:
        """Effective external scope, for handlers that have one."""
        return None

    @abc.abstractmethod
    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        """Run the primary effect, then secondary effects."""


class CreateIssueHandler(Handler):
    action_type = ActionType.CREATE_ISSUE
    description = "Create a GitHub issue in the current repository."
    input_schema = tool_schema(
        ["title", "body"],
        {
            "title": {"type": "string", "minLength": 1},
            "body": {"type": "string"},
            "labels": _LABELS_PROP,
        },
    )
    policy: CreateIssuePolicy

    def _log_configuration(self) -> None:
        p = self.policy
        logger.info(
            "create-issue handler configured: max=%s, title prefix=%s, labels=%s, allowed labels=%s, expires=%s",
            p.max,
            p.title_prefix or "(none)",
            ", ".join(p.labels) or "(none)",
            ", ".join(p.allowed_labels) or "(any)",
            p.expires or "(never)",
        )

    def validate(self, request: SafeOutputRequest) -> None:
        if is_blank(request.title):
            raise ValidationError("Issue title is required", hint="Provide a non-empty 'title'")

    async def check_policy(self, request: SafeOutputRequest, api: GitHubApi) -> PolicyResult:
        return PolicyResult(check_allowed_labels(request.labels, self.policy.allowed_labels))

    def _title(self, raw: str) -> str:
        title = raw.strip()
        prefix = self.policy.title_prefix
        if prefix and not title.startswith(prefix):
            title = f"{prefix}{title}"
        return title

    def _body(self, raw: str | None) -> str:
        body = self.compose_body(raw or "")
        if self.policy.expires is not None:
            expires_at = datetime.now(timezone.utc) + self.policy.expires
            stamp = expires_at.replace(microsecond=0).isoformat().replace("+00:00", "Z")
            body = f"{body}\n<!-- safe-outputs-expires: {stamp} -->"
        return body

    def _group_marker(self) -> str:
        return f"<!-- safe-outputs-group: {self.context.workflow_name or 'safe-outputs'} -->"

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        labels = list(self.policy.labels)
        labels.extend(label for label in request.labels if label not in labels)

        issue = await run_primary(
            "Failed to create issue",
            api.create_issue(self.owner, self.repo, title=self._title(request.title or ""), body=self._body(request.body), labels=labels),
        )
        details: dict[str, Any] = {"issue_number": issue["number"], "url": issue["url"]}
        secondary = SecondaryEffects(request.correlation_id)

        if self.policy.close_older_issues:
            closed = await self._close_older_issues(api, issue["number"], secondary)
            details["closedOlderIssues"] = closed

        if self.policy.group:
            ok, parent = await secondary.attempt(
                f"group issue #{issue['number']}", self._attach_to_group(api, issue)
            )
            details["grouped"] = ok
            if ok and parent is not None:
                details["parent_issue_number"] = parent

        return ExecutionResult.ok(details, secondary.errors)

    async def _close_older_issues(self, api: GitHubApi, new_number: int, secondary: SecondaryEffects) -> list[int]:
        marker = workflow_marker(self.context)
        ok, found = await secondary.attempt(
            "search for older issues",
            api.search_open_issues(self.owner, self.repo, text=marker[5:-4].strip()),
        )
        if not ok or not found:
            return []
        closed: list[int] = []
        for older in found:
            number = older["number"]
            body = older.get("body") or ""
            if number == new_number or marker not in body or self._group_marker() in body:
                continue
            note = self.compose_body(f"Superseded by #{new_number}.")
            await secondary.attempt(f"comment on older issue #{number}", api.create_comment(self.owner, self.repo, number, note))
            ok, _ = await secondary.attempt(
                f"close older issue #{number}",
                api.close_issue(self.owner, self.repo, number, state_reason="not_planned"),
            )
            if ok:
                closed.append(number)
        return closed

    async def _attach_to_group(self, api: GitHubApi, issue: dict[str, Any]) -> int:
        group_marker = self._group_marker()
        candidates = await api.search_open_issues(self.owner, self.repo, text=group_marker[5:-4].strip())
        parent = next((c for c in candidates if group_marker in (c.get("body") or "")), None)
        if parent is None:
            name = self.context.workflow_name or "Safe outputs"
            parent = await api.create_issue(
                self.owner,
                self.repo,
                title=self._title(f"{name} issue group"),
                body=f"{self.compose_body(f'Issues created by {name}.')}\n{group_marker}",
                labels=list(self.policy.labels),
            )
        if not isinstance(issue.get("id"), int):
            raise ValidationError("Created issue has no numeric id")
        await api.add_sub_issue(self.owner, self.repo, parent["number"], issue["id"])
        return parent["number"]


class AddCommentHandler(Handler):
    action_type = ActionType.ADD_COMMENT
    description = "Add a comment to an issue or pull request (defaults to the triggering one)."
    input_schema = tool_schema(
        ["body"],
        {
            "body": {"type": "string", "minLength": 1},
            "item_number": _NUMBER_PROP,
        },
    )
    policy: AddCommentPolicy

    def validate(self, request: SafeOutputRequest) -> None:
        if request.item_number is None:
            raise ValidationError(
                "No item_number provided and not running in an issue or pull request context",
                hint="Provide 'item_number'",
            )
        if is_blank(request.body):
            raise ValidationError("No comment body provided", hint="Provide a non-empty 'body'")

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        number = request.item_number
        comment = await run_primary(
            f"Failed to add comment to #{number}",
            api.create_comment(self.owner, self.repo, number, self.compose_body(request.body or "")),
        )
        details: dict[str, Any] = {"item_number": number, "comment_id": comment["id"], "url": comment["url"]}
        secondary = SecondaryEffects(request.correlation_id)

        if self.policy.hide_older_comments:
            details["hiddenComments"] = await self._hide_older(api, number, comment["id"], secondary)

        return ExecutionResult.ok(details, secondary.errors)

    async def _hide_older(self, api: GitHubApi, number: int, new_id: int, secondary: SecondaryEffects) -> int:
        marker = workflow_marker(self.context)
        ok, comments = await secondary.attempt(f"list comments on #{number}", api.list_comments(self.owner, self.repo, number))
        if not ok or not comments:
            return 0
        hidden = 0
        for c in comments:
            if c["id"] == new_id or marker not in c["body"] or not c.get("node_id"):
                continue
            ok, _ = await secondary.attempt(f"hide comment {c['id']}", api.minimize_comment(c["node_id"]))
            if ok:
                hidden += 1
        return hidden


class _LabelsHandler(Handler):
    policy: LabelsPolicy

    def _log_configuration(self) -> None:
        logger.info(
            "%s handler configured: max=%s, allowed labels=%s",
            self.action_type.value,
            self.policy.max,
            ", ".join(self.policy.allowed_labels) or "(any)",
        )

    def validate(self, request: SafeOutputRequest) -> None:
        if request.item_number is None:
            raise ValidationError(
                "No item_number provided and not running in an issue or pull request context",
                hint="Provide 'item_number'",
            )
        if not request.labels:
            raise ValidationError("No labels provided", hint="Provide a non-empty 'labels' array")

    async def check_policy(self, request: SafeOutputRequest, api: GitHubApi) -> PolicyResult:
        return PolicyResult(check_allowed_labels(request.labels, self.policy.allowed_labels))


class AddLabelsHandler(_LabelsHandler):
    action_type = ActionType.ADD_LABELS
    description = "Add labels to an issue or pull request (defaults to the triggering one)."
    input_schema = tool_schema(["labels"], {"labels": _LABELS_PROP, "item_number": _NUMBER_PROP})

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        number = request.item_number
        current = await run_primary(
            f"Failed to add labels to #{number}",
            api.add_labels(self.owner, self.repo, number, list(request.labels)),
        )
        return ExecutionResult.ok({"item_number": number, "labelsAdded": list(request.labels), "labels": current})


class RemoveLabelsHandler(_LabelsHandler):
    action_type = ActionType.REMOVE_LABELS
    description = "Remove labels from an issue or pull request (defaults to the triggering one)."
    input_schema = tool_schema(["labels"], {"labels": _LABELS_PROP, "item_number": _NUMBER_PROP})

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        number = request.item_number
        removed: list[str] = []
        absent: list[str] = []
        for label in request.labels:
            was_present = await run_primary(
                f"Failed to remove label '{label}' from #{number}",
                api.remove_label(self.owner, self.repo, number, label),
            )
            (removed if was_present else absent).append(label)
        return ExecutionResult.ok({"item_number": number, "labelsRemoved": removed, "labelsNotPresent": absent})


class _CloseHandler(Handler):
    """Close an issue or pull request and explain why in a comment."""

    number_field: ClassVar[str]
    entity: ClassVar[str]
    article: ClassVar[str] = "a"
    policy: ClosePolicy

    def _log_configuration(self) -> None:
        p = self.policy
        logger.info(
            "%s handler configured: max=%s, required labels=%s, required title prefix=%s, default comment=%s",
            self.action_type.value,
            p.max,
            ", ".join(p.required_labels) or "(none)",
            p.required_title_prefix or "(none)",
            "yes" if p.default_comment else "no",
        )

    def _number(self, request: SafeOutputRequest) -> int | None:
        return getattr(request, self.number_field)

    def validate(self, request: SafeOutputRequest) -> None:
        if self._number(request) is None:
            raise ValidationError(
                f"No {self.number_field} provided and not running in {self.article} {self.entity} context",
                hint=f"Provide '{self.number_field}'",
            )
        if is_blank(request.body) and not self.policy.default_comment:
            raise ValidationError(
                "No comment body provided",
                hint=f"Provide a non-empty 'body' explaining why the {self.entity} is being closed",
            )

    @abc.abstractmethod
    async def _fetch(self, api: GitHubApi, number: int) -> dict[str, Any]:
        """Read the target's current state."""

    @abc.abstractmethod
    async def _close(self, api: GitHubApi, number: int) -> dict[str, Any]:
        """Change the target's state to closed."""

    async def check_policy(self, request: SafeOutputRequest, api: GitHubApi) -> PolicyResult:
        number = self._number(request)
        target = await run_primary(f"Failed to fetch {self.entity} #{number}", self._fetch(api, number))
        decision = check_required_labels(target["labels"], self.policy.required_labels)
        if decision.allowed:
            decision = check_title_prefix(target["title"], self.policy.required_title_prefix)
        return PolicyResult(decision, target)

    def _comment_text(self, request: SafeOutputRequest) -> str:
        if not is_blank(request.body):
            return request.body or ""
        return render_template(self.policy.default_comment or "", template_values(self.context))

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        number = self._number(request)
        target = admitted.target or {}
        already_closed = target.get("state") == "closed"
        url = target.get("url")

        if already_closed:
            logger.info("%s #%s is already closed; skipping state change", self.entity, number)
        else:
            closed = await run_primary(f"Failed to close {self.entity} #{number}", self._close(api, number))
            url = closed.get("url") or url

        secondary = SecondaryEffects(request.correlation_id)
        posted, comment = await secondary.attempt(
            f"add comment to {self.entity} #{number}",
            api.create_comment(self.owner, self.repo, number, self.compose_body(self._comment_text(request))),
        )

        details: dict[str, Any] = {
            self.number_field: number,
            "url": url,
            "alreadyClosed": already_closed,
            "commentPosted": posted,
        }
        if posted and comment is not None:
            details["comment_id"] = comment["id"]
            details["comment_url"] = comment["url"]
        return ExecutionResult.ok(details, secondary.errors)


class ClosePullRequestHandler(_CloseHandler):
    action_type = ActionType.CLOSE_PULL_REQUEST
    description = "Close a pull request with an explanatory comment (defaults to the triggering pull request)."
    input_schema = tool_schema(
        [],
        {"body": {"type": "string"}, "pull_request_number": _NUMBER_PROP},
    )
    number_field = "pull_request_number"
    entity = "pull request"

    async def _fetch(self, api: GitHubApi, number: int) -> dict[str, Any]:
        return await api.get_pull_request(self.owner, self.repo, number)

    async def _close(self, api: GitHubApi, number: int) -> dict[str, Any]:
        return await api.close_pull_request(self.owner, self.repo, number)


class CloseIssueHandler(_CloseHandler):
    action_type = ActionType.CLOSE_ISSUE
    description = "Close an issue with an explanatory comment (defaults to the triggering issue)."
    input_schema = tool_schema(
        [],
        {"body": {"type": "string"}, "issue_number": _NUMBER_PROP},
    )
    number_field = "issue_number"
    entity = "issue"
    article = "an"

    async def _fetch(self, api: GitHubApi, number: int) -> dict[str, Any]:
        return await api.get_issue(self.owner, self.repo, number)

    async def _close(self, api: GitHubApi, number: int) -> dict[str, Any]:
        return await api.close_issue(self.owner, self.repo, number)


class CreatePullRequestHandler(Handler):
    action_type = ActionType.CREATE_PULL_REQUEST
    description = "Open a pull request from a branch that has already been pushed."
    input_schema = tool_schema(
        ["title", "branch"],
        {
            "title": {"type": "string", "minLength": 1},
            "body": {"type": "string"},
            "branch": {"type": "string", "minLength": 1},
            "base": {"type": "string"},
            "draft": {"type": "boolean"},
        },
    )
    policy: CreatePullRequestPolicy

    def validate(self, request: SafeOutputRequest) -> None:
        if is_blank(request.title):
            raise ValidationError("Pull request title is required", hint="Provide a non-empty 'title'")
        if is_blank(request.branch):
            raise ValidationError("Head branch is required", hint="Provide the pushed 'branch' name")

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        title = (request.title or "").strip()
        prefix = self.policy.title_prefix
        if prefix and not title.startswith(prefix):
            title = f"{prefix}{title}"
        draft = self.policy.draft if request.draft is None else request.draft

        base = request.base or self.policy.base_branch
        if not base:
            base = await run_primary("Failed to read repository default branch", api.get_default_branch(self.owner, self.repo))

        pr = await run_primary(
            f"Failed to create pull request from {request.branch}",
            api.create_pull_request(
                self.owner,
                self.repo,
                title=title,
                body=self.compose_body(request.body or ""),
                head=(request.branch or "").strip(),
                base=base,
                draft=draft,
            ),
        )
        details: dict[str, Any] = {"pull_request_number": pr["number"], "url": pr["url"], "draft": draft}
        secondary = SecondaryEffects(request.correlation_id)
        if self.policy.labels:
            ok, _ = await secondary.attempt(
                f"add labels to pull request #{pr['number']}",
                api.add_labels(self.owner, self.repo, pr["number"], list(self.policy.labels)),
            )
            details["labelsAdded"] = list(self.policy.labels) if ok else []
        return ExecutionResult.ok(details, secondary.errors)


class NoopHandler(Handler):
    action_type = ActionType.NOOP
    description = "Record that no action is needed, with a short explanation."
    input_schema = tool_schema(["message"], {"message": {"type": "string", "minLength": 1}})

    def validate(self, request: SafeOutputRequest) -> None:
        if is_blank(request.message):
            raise ValidationError("No message provided", hint="Explain why no action is needed in 'message'")

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        logger.info("No-op recorded: %s", (request.message or "").strip())
        return ExecutionResult.ok({"message": (request.message or "").strip()})
