"""Execution handlers for project-scoped safe outputs (Projects v2).

The effective project is resolved per request: an explicit `project` URL wins
over the configured default. Project mutations use a dedicated credential.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .config import ActionType, ProjectPolicy, ProjectStatusUpdatePolicy
from .errors import ValidationError
from .execution import ExecutionResult, run_primary
from .github_api import GitHubApi, ProjectField, ProjectInfo
from .handlers import Admitted, Handler, is_blank, tool_schema
from .request import SafeOutputRequest
from .scope import ProjectRef, resolve_project_scope

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("draft_issue", "issue", "pull_request")

STATUS_VALUES = ("ON_TRACK", "AT_RISK", "OFF_TRACK", "COMPLETE", "INACTIVE")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_status(raw: str | None) -> str:
    """`on track`, `on-track` and `ON_TRACK` all map to `ON_TRACK`."""
    value = re.sub(r"[\s-]+", "_", (raw or "").strip()).upper()
    if value not in STATUS_VALUES:
        raise ValidationError(f"Invalid status: {raw}", hint=f"Use one of: {', '.join(STATUS_VALUES)}")
    return value


def _check_date(name: str, value: str | None) -> None:
    if value is not None and not _DATE_RE.match(value.strip()):
        raise ValidationError(f"Invalid {name.replace('_', ' ')}: {value}", hint="Use YYYY-MM-DD")


def field_value(project_field: ProjectField, raw: str) -> dict[str, Any]:
    """Convert an agent-supplied string into a `ProjectV2FieldValue` for the field.

    Raises:
        ValidationError: If the value does not fit the field's type.
    """
    kind = project_field.data_type
    if kind == "single_select":
        wanted = raw.strip().lower()
        for name, option_id in project_field.options.items():
            if name.lower() == wanted:
                return {"singleSelectOptionId": option_id}
        raise ValidationError(
            f"Invalid option '{raw}' for field '{project_field.name}'",
            hint=f"Available options: {', '.join(project_field.options) or '(none)'}",
        )
    if kind == "text":
        return {"text": raw}
    if kind == "number":
        try:
            return {"number": float(raw)}
        except ValueError as exc:
            raise ValidationError(f"Field '{project_field.name}' expects a number, got '{raw}'") from exc
    if kind == "date":
        if not _DATE_RE.match(raw.strip()):
            raise ValidationError(f"Field '{project_field.name}' expects a date (YYYY-MM-DD), got '{raw}'")
        return {"date": raw.strip()}
    raise ValidationError(f"Field '{project_field.name}' of type {kind} cannot be set")


def plan_field_updates(project: ProjectInfo, requested: dict[str, str]) -> list[tuple[ProjectField, dict[str, Any]]]:
    """Map every requested field onto the project's definitions before anything is written."""
    plan: list[tuple[ProjectField, dict[str, Any]]] = []
    for name, raw in requested.items():
        project_field = project.find_field(name)
        if project_field is None:
            raise ValidationError(
                f"Unknown project field: {name}",
                hint=f"Available fields: {', '.join(f.name for f in project.fields) or '(none)'}",
            )
        plan.append((project_field, field_value(project_field, raw)))
    return plan


class UpdateProjectHandler(Handler):
    action_type = ActionType.UPDATE_PROJECT
    description = "Add an issue, pull request or draft item to a project board and set its fields."
    input_schema = tool_schema(
        ["content_type"],
        {
            "project": {"type": "string", "description": "Project URL; defaults to the configured project"},
            "content_type": {"type": "string", "enum": list(CONTENT_TYPES)},
            "content_number": {"type": ["integer", "string"]},
            "draft_title": {"type": "string"},
            "draft_body": {"type": "string"},
            "fields": {"type": "object", "additionalProperties": {"type": "string"}},
        },
    )
    policy: ProjectPolicy

    def _log_configuration(self) -> None:
        logger.info(
            "update-project handler configured: max=%s, default project=%s, views=%s",
            self.policy.max,
            self.policy.default_project or "(none)",
            ", ".join(v.name for v in self.policy.views) or "(none)",
        )

    def validate(self, request: SafeOutputRequest) -> None:
        content_type = (request.content_type or "").strip()
        if content_type not in CONTENT_TYPES:
            raise ValidationError(
                f"Invalid content_type: {request.content_type}",
                hint=f"Use one of: {', '.join(CONTENT_TYPES)}",
            )
        if content_type == "draft_issue":
            if is_blank(request.draft_title):
                raise ValidationError("draft_title is required for content_type draft_issue")
        elif request.content_number is None:
            raise ValidationError(f"content_number is required for content_type {content_type}")

    def resolve_scope(self, request: SafeOutputRequest) -> ProjectRef | None:
        return resolve_project_scope(request.project, self.policy.default_project)

    def _missing_views(self, project: ProjectInfo) -> list[str]:
        existing = {(name.lower(), layout) for name, layout in project.views}
        return [v.name for v in self.policy.views if (v.name.lower(), v.layout) not in existing]

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        scope = admitted.scope
        if scope is None:
            raise ValidationError("No project specified")
        project = await run_primary(f"Failed to load project {scope.url}", api.get_project(scope))
        plan = plan_field_updates(project, dict(request.fields))

        content_type = (request.content_type or "").strip()
        if content_type == "draft_issue":
            item_id = await run_primary(
                "Failed to add draft issue to project",
                api.add_project_draft_issue(
                    project.project_id,
                    title=(request.draft_title or "").strip(),
                    body=request.draft_body,
                ),
            )
        else:
            number = request.content_number
            content_id = await run_primary(
                f"Failed to resolve {content_type.replace('_', ' ')} #{number}",
                api.get_content_node_id(self.owner, self.repo, number),
            )
            item_id = await run_primary(
                f"Failed to add #{number} to project", api.add_project_item(project.project_id, content_id)
            )

        updated: list[str] = []
        for project_field, value in plan:
            await run_primary(
                f"Failed to set field '{project_field.name}'",
                api.set_project_field_value(project.project_id, item_id, project_field.field_id, value),
            )
            updated.append(project_field.name)

        details: dict[str, Any] = {
            "project_url": project.url,
            "item_id": item_id,
            "content_type": content_type,
            "fieldsUpdated": updated,
        }
        if self.policy.views:
            missing = self._missing_views(project)
            if missing:
                logger.warning("Project %s is missing configured views: %s", project.url, ", ".join(missing))
            details["missingViews"] = missing
        return ExecutionResult.ok(details)


class CreateProjectStatusUpdateHandler(Handler):
    action_type = ActionType.CREATE_PROJECT_STATUS_UPDATE
    description = "Post a status update on a project board."
    input_schema = tool_schema(
        ["body", "status"],
        {
            "project": {"type": "string", "description": "Project URL; defaults to the configured project"},
            "body": {"type": "string", "minLength": 1},
            "status": {"type": "string", "enum": list(STATUS_VALUES)},
            "start_date": {"type": "string", "description": "YYYY-MM-DD"},
            "target_date": {"type": "string", "description": "YYYY-MM-DD"},
        },
    )
    policy: ProjectStatusUpdatePolicy

    def validate(self, request: SafeOutputRequest) -> None:
        if is_blank(request.body):
            raise ValidationError("Status update body is required", hint="Provide a non-empty 'body'")
        normalize_status(request.status)
        _check_date("start_date", request.start_date)
        _check_date("target_date", request.target_date)

    def resolve_scope(self, request: SafeOutputRequest) -> ProjectRef | None:
        return resolve_project_scope(request.project, self.policy.default_project)

    async def execute(self, request: SafeOutputRequest, api: GitHubApi, admitted: Admitted) -> ExecutionResult:
        scope = admitted.scope
        if scope is None:
            raise ValidationError("No project specified")
        status = normalize_status(request.status)
        project = await run_primary(f"Failed to load project {scope.url}", api.get_project(scope))
        update_id = await run_primary(
            "Failed to create project status update",
            api.create_project_status_update(
                project.project_id,
                body=self.compose_body(request.body or ""),
                status=status,
                start_date=request.start_date.strip() if request.start_date else None,
                target_date=request.target_date.strip() if request.target_date else None,
            ),
        )
        return ExecutionResult.ok({"project_url": project.url, "status_update_id": update_id, "status": status})
