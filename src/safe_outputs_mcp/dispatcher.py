"""Handler registry and request mediation.

`Mediator.handle` runs every proposed action through the same pipeline:

    normalize -> validate -> policy -> admission + scope -> execute -> audit

It carries no type-specific logic; everything type-specific lives in the
handler registered for the action type. Exactly one audit entry is appended per
call, before the result is returned.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

import httpx

from .admission import AdmissionController
from .audit import (
    OUTCOME_ACCEPTED,
    OUTCOME_REJECTED,
    STAGE_ADMISSION,
    STAGE_EXECUTION,
    STAGE_NORMALIZATION,
    STAGE_POLICY,
    STAGE_SCOPE,
    STAGE_VALIDATION,
    AppendLog,
    build_entry,
)
from .auth import GitHubAppAuth, build_token_provider
from .config import ActionType, AppConfig, load_config
from .context import RunContext, load_run_context
from .errors import CODE_EXECUTION, SafeError, internal_error, safe_error_to_result
from .github_api import GitHubApi
from .github_client import GitHubClient
from .github_graphql_client import GitHubGraphQLClient
from .handlers import (
    AddCommentHandler,
    AddLabelsHandler,
    Admitted,
    CloseIssueHandler,
    ClosePullRequestHandler,
    CreateIssueHandler,
    CreatePullRequestHandler,
    Handler,
    NoopHandler,
    RemoveLabelsHandler,
)
from .messages import render_run_message
from .project_handlers import CreateProjectStatusUpdateHandler, UpdateProjectHandler
from .request import new_correlation_id, normalize_request, resolve_action_type

logger = logging.getLogger(__name__)

HANDLERS: dict[ActionType, type[Handler]] = {
    ActionType.CREATE_ISSUE: CreateIssueHandler,
    ActionType.ADD_COMMENT: AddCommentHandler,
    ActionType.ADD_LABELS: AddLabelsHandler,
    ActionType.REMOVE_LABELS: RemoveLabelsHandler,
    ActionType.CLOSE_ISSUE: CloseIssueHandler,
    ActionType.CLOSE_PULL_REQUEST: ClosePullRequestHandler,
    ActionType.CREATE_PULL_REQUEST: CreatePullRequestHandler,
    ActionType.UPDATE_PROJECT: UpdateProjectHandler,
    ActionType.CREATE_PROJECT_STATUS_UPDATE: CreateProjectStatusUpdateHandler,
    ActionType.NOOP: NoopHandler,
}

ApiFactory = Callable[[ActionType], GitHubApi]


class Mediator:
    """Per-run mediation layer between the agent and GitHub."""

    def __init__(
        self,
        *,
        config: AppConfig,
        context: RunContext,
        audit: AppendLog,
        api_factory: ApiFactory,
        admission: AdmissionController | None = None,
    ) -> None:
        self.config = config
        self.context = context
        self.audit = audit
        self.admission = admission or AdmissionController()
        self._api_factory = api_factory
        self._apis: dict[ActionType, GitHubApi] = {}
        self._handlers: dict[ActionType, Handler] = {
            action_type: HANDLERS[action_type](
                policy=config.policies.get(action_type),
                context=context,
                messages=config.messages,
            )
            for action_type in config.policies.enabled_types()
        }
        self.accepted = 0
        self.rejected = 0
        self.failed = 0

    def handler(self, action_type: ActionType) -> Handler:
        return self._handlers[action_type]

    def tool_metadata(self) -> dict[str, dict[str, Any]]:
        """Tool descriptions for the enabled action types only."""
        return {
            t.tool_name: {"description": h.description, "inputSchema": h.input_schema}
            for t, h in self._handlers.items()
        }

    def _api(self, action_type: ActionType) -> GitHubApi:
        api = self._apis.get(action_type)
        if api is None:
            api = self._api_factory(action_type)
            self._apis[action_type] = api
        return api

    def _tally(self, outcome: str, failed: bool) -> None:
        if failed:
            self.failed += 1
        elif outcome == OUTCOME_ACCEPTED:
            self.accepted += 1
        else:
            self.rejected += 1

    def run_message(self, phase: str) -> str:
        """Render a run status line from the counters so far."""
        return render_run_message(
            self.config.messages,
            self.context,
            phase=phase,
            accepted=self.accepted,
            rejected=self.rejected + self.failed,
        )

    def summary(self) -> dict[str, Any]:
        """Non-secret counters for status reporting."""
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "failed": self.failed,
            "admitted_by_type": self.admission.snapshot(),
        }

    async def handle(self, name: str, arguments: Mapping[str, Any]) -> dict[str, Any]:
        """Process one proposed action and return the outbound result envelope."""
        correlation_id = new_correlation_id()
        start = self.audit.measure_start()
        type_name = str(name)
        audit_request: dict[str, Any] = dict(arguments)
        stage = STAGE_NORMALIZATION

        try:
            action_type = resolve_action_type(name, self.config.policies.enabled_types())
            type_name = action_type.value
            handler = self._handlers[action_type]
            request = normalize_request(
                action_type,
                arguments,
                context=self.context,
                allowed_fields=handler.input_schema["properties"],
                limits=self.config.limits,
                correlation_id=correlation_id,
            )
            audit_request = request.to_dict()

            stage = STAGE_VALIDATION
            handler.validate(request)

            stage = STAGE_POLICY
            api = self._api(action_type)
            checked = await handler.check_policy(request, api)
            checked.decision.raise_if_denied()

            stage = STAGE_ADMISSION
            async with self.admission.holding(action_type):
                self.admission.check(action_type, handler.policy.max)
                stage = STAGE_SCOPE
                scope = handler.resolve_scope(request)
                self.admission.record(action_type)

            stage = STAGE_EXECUTION
            result = await handler.execute(request, api, Admitted(target=checked.target, scope=scope))

        except SafeError as err:
            failed = stage == STAGE_EXECUTION or err.code == CODE_EXECUTION
            outcome = self._outcome(stage)
            log = logger.warning if failed else logger.info
            log("[%s] %s %s at %s: %s", correlation_id, type_name, "failed" if failed else outcome, stage, err)
            envelope = safe_error_to_result(err)
            self._record(
                correlation_id, type_name, audit_request, outcome, start,
                failed=failed, stage=stage, reason=str(err), result=envelope,
            )
            envelope["correlation_id"] = correlation_id
            return envelope
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("[%s] %s failed unexpectedly at %s", correlation_id, type_name, stage)
            envelope = internal_error("Internal error")
            self._record(
                correlation_id, type_name, audit_request, self._outcome(stage), start,
                failed=True, stage=stage, reason="Internal error", result=envelope,
            )
            envelope["correlation_id"] = correlation_id
            return envelope

        envelope = result.to_dict()
        self._record(
            correlation_id, type_name, audit_request, OUTCOME_ACCEPTED, start,
            failed=not result.success, result=envelope,
        )
        envelope["correlation_id"] = correlation_id
        return envelope

    @staticmethod
    def _outcome(stage: str) -> str:
        """Admitted requests are `accepted` even when their effect fails; `stage` tells them apart."""
        return OUTCOME_ACCEPTED if stage == STAGE_EXECUTION else OUTCOME_REJECTED

    def _record(
        self,
        correlation_id: str,
        type_name: str,
        request: Mapping[str, Any],
        outcome: str,
        start: float,
        *,
        failed: bool = False,
        stage: str | None = None,
        reason: str | None = None,
        result: Mapping[str, Any] | None = None,
    ) -> None:
        self._tally(outcome, failed)
        self.audit.append(
            build_entry(
                correlation_id=correlation_id,
                action_type=type_name,
                request=request,
                outcome=outcome,
                stage=stage,
                reason=reason,
                result=result,
                duration_ms=self.audit.measure_duration_ms(start),
            )
        )


def build_api_factory(config: AppConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> ApiFactory:
    """Build GitHub API facades bound to the credential each action type uses."""
    app_auth = None
    if config.credentials.app is not None:
        app_auth = GitHubAppAuth(credentials=config.credentials.app, api_base_url=config.api_base_url, transport=transport)

    def factory(action_type: ActionType) -> GitHubApi:
        token_provider = build_token_provider(static_token=config.credentials.token_for(action_type), app_auth=app_auth)
        return GitHubApi(
            rest=GitHubClient(
                token_provider=token_provider,
                limits=config.limits,
                api_base_url=config.api_base_url,
                transport=transport,
            ),
            graphql=GitHubGraphQLClient(
                token_provider=token_provider,
                limits=config.limits,
                api_base_url=config.api_base_url,
                transport=transport,
            ),
        )

    return factory


def build_mediator_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Mediator:
    """Load configuration and run context and wire a Mediator.

    Raises:
        FatalConfigError: If configuration or run context is missing/invalid.
    """
    config = load_config(environ)
    context = load_run_context(environ)
    return Mediator(
        config=config,
        context=context,
        audit=AppendLog(sink_path=config.audit_log_path),
        api_factory=build_api_factory(config, transport=transport),
    )


_MEDIATOR: Mediator | None = None


def initialize_mediator_from_env() -> Mediator:
    """Initialize and cache the process-wide Mediator.

    Called at server startup (fail-fast), and can also be used lazily.
    """
    global _MEDIATOR  # pylint: disable=global-statement
    if _MEDIATOR is None:
        _MEDIATOR = build_mediator_from_env()
    return _MEDIATOR


def reset_mediator() -> None:
    """Drop the cached Mediator (tests)."""
    global _MEDIATOR  # pylint: disable=global-statement
    _MEDIATOR = None
