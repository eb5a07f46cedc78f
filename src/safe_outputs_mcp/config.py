"""Configuration loading for safe-outputs-mcp.

Configuration is compiled from the workflow definition and supplied by the host
environment, never by the agent. It is loaded once per run and is read-only
afterwards. Credentials are resolved from the environment at load time and are
never emitted to agents, logs, or the audit log.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping

from .errors import FatalConfigError, SafeError
from .scope import parse_project_url

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Closed set of actions an agent may propose."""

    CREATE_ISSUE = "create-issue"
    ADD_COMMENT = "add-comment"
    ADD_LABELS = "add-labels"
    REMOVE_LABELS = "remove-labels"
    CLOSE_ISSUE = "close-issue"
    CLOSE_PULL_REQUEST = "close-pull-request"
    CREATE_PULL_REQUEST = "create-pull-request"
    UPDATE_PROJECT = "update-project"
    CREATE_PROJECT_STATUS_UPDATE = "create-project-status-update"
    NOOP = "noop"

    @classmethod
    def from_wire(cls, raw: object) -> ActionType | None:
        """Parse a type discriminant; `close_pull_request` and `close-pull-request` are equivalent."""
        if not isinstance(raw, str):
            return None
        normalized = raw.strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        return None

    @property
    def tool_name(self) -> str:
        """Name under which the action is exposed as a tool."""
        return self.value.replace("-", "_")


PROJECT_SCOPED_TYPES: frozenset[ActionType] = frozenset(
    {ActionType.UPDATE_PROJECT, ActionType.CREATE_PROJECT_STATUS_UPDATE}
)

DEFAULT_MAX: dict[ActionType, int] = {
    ActionType.CREATE_ISSUE: 1,
    ActionType.ADD_COMMENT: 1,
    ActionType.ADD_LABELS: 3,
    ActionType.REMOVE_LABELS: 3,
    ActionType.CLOSE_ISSUE: 1,
    ActionType.CLOSE_PULL_REQUEST: 1,
    ActionType.CREATE_PULL_REQUEST: 1,
    ActionType.UPDATE_PROJECT: 10,
    ActionType.CREATE_PROJECT_STATUS_UPDATE: 1,
    ActionType.NOOP: 1,
}

VIEW_LAYOUTS: frozenset[str] = frozenset({"table", "board", "roadmap"})


@dataclass(frozen=True, slots=True)
class ActionPolicy:
    """Rules shared by every action type."""

    max: int = 1
    # Name of the environment variable holding a per-type credential.
    github_token: str | None = None


@dataclass(frozen=True, slots=True)
class CreateIssuePolicy(ActionPolicy):
    title_prefix: str | None = None
    labels: tuple[str, ...] = ()
    allowed_labels: tuple[str, ...] = ()
    expires: timedelta | None = None
    group: bool = False
    close_older_issues: bool = False


@dataclass(frozen=True, slots=True)
class AddCommentPolicy(ActionPolicy):
    hide_older_comments: bool = False


@dataclass(frozen=True, slots=True)
class LabelsPolicy(ActionPolicy):
    allowed_labels: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ClosePolicy(ActionPolicy):
    required_labels: tuple[str, ...] = ()
    required_title_prefix: str | None = None
    default_comment: str | None = None


@dataclass(frozen=True, slots=True)
class CreatePullRequestPolicy(ActionPolicy):
    title_prefix: str | None = None
    labels: tuple[str, ...] = ()
    draft: bool = True
    base_branch: str | None = None


@dataclass(frozen=True, slots=True)
class ProjectView:
    """A view the project board is expected to carry."""

    name: str
    layout: str = "table"
    filter: str | None = None


@dataclass(frozen=True, slots=True)
class ProjectPolicy(ActionPolicy):
    default_project: str | None = None
    views: tuple[ProjectView, ...] = ()


@dataclass(frozen=True, slots=True)
class ProjectStatusUpdatePolicy(ActionPolicy):
    default_project: str | None = None


_POLICY_CLASSES: dict[ActionType, type[ActionPolicy]] = {
    ActionType.CREATE_ISSUE: CreateIssuePolicy,
    ActionType.ADD_COMMENT: AddCommentPolicy,
    ActionType.ADD_LABELS: LabelsPolicy,
    ActionType.REMOVE_LABELS: LabelsPolicy,
    ActionType.CLOSE_ISSUE: ClosePolicy,
    ActionType.CLOSE_PULL_REQUEST: ClosePolicy,
    ActionType.CREATE_PULL_REQUEST: CreatePullRequestPolicy,
    ActionType.UPDATE_PROJECT: ProjectPolicy,
    ActionType.CREATE_PROJECT_STATUS_UPDATE: ProjectStatusUpdatePolicy,
    ActionType.NOOP: ActionPolicy,
}


@dataclass(frozen=True, slots=True)
class MessagesConfig:
    """Message templates rendered with run placeholders."""

    footer: str | None = None
    run_started: str | None = None
    run_success: str | None = None
    run_failure: str | None = None


@dataclass(frozen=True, slots=True)
class LimitsConfig:
    """Non-functional safety limits."""

    # Network
    total_timeout_s: float = 60.0
    connect_timeout_s: float = 5.0
    read_timeout_s: float = 30.0

    # Retries (read-only calls only)
    max_attempts: int = 3
    max_backoff_s: float = 5.0

    # Payload limits
    title_max_bytes: int = 1024
    body_max_bytes: int = 64 * 1024
    max_labels: int = 20
    max_fields: int = 25


@dataclass(frozen=True, slots=True)
class GitHubAppCredentials:
    """GitHub App installation binding."""

    app_id: int
    installation_id: int
    private_key_path: Path = field(repr=False)


@dataclass(frozen=True, slots=True)
class Credentials:
    """Resolved credentials. Values are excluded from repr."""

    default_token: str | None = field(default=None, repr=False)
    project_token: str | None = field(default=None, repr=False)
    app: GitHubAppCredentials | None = None
    per_type: Mapping[ActionType, str] = field(default_factory=dict, repr=False)

    def token_for(self, action_type: ActionType) -> str | None:
        """Return a static token for the action type, or None when the app token should be used."""
        override = self.per_type.get(action_type)
        if override:
            return override
        if action_type in PROJECT_SCOPED_TYPES:
            return self.project_token
        return self.default_token


class PolicyStore:
    """Read-only lookup of per-type policies."""

    def __init__(self, policies: Mapping[ActionType, ActionPolicy]) -> None:
        self._policies = MappingProxyType(dict(policies))

    def get(self, action_type: ActionType) -> ActionPolicy:
        """Return the policy for a type.

        Raises:
            FatalConfigError: If the type has no configuration entry.
        """
        try:
            return self._policies[action_type]
        except KeyError as exc:
            raise FatalConfigError(f"No configuration for safe output type '{action_type.value}'") from exc

    def enabled_types(self) -> tuple[ActionType, ...]:
        """Return configured types in declaration order of the closed set."""
        return tuple(t for t in ActionType if t in self._policies)

    def __contains__(self, action_type: object) -> bool:
        return action_type in self._policies

    def __iter__(self) -> Iterator[ActionType]:
        return iter(self.enabled_types())

    def __len__(self) -> int:
        return len(self._policies)


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Run-wide configuration."""

    policies: PolicyStore
    messages: MessagesConfig
    credentials: Credentials
    audit_log_path: Path | None
    api_base_url: str = "https://api.github.com"
    limits: LimitsConfig = field(default_factory=LimitsConfig)


def _parse_bool(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    return normalized in {"1", "true", "yes", "on"}


def _parse_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("must be a string")
    return value if value.strip() else None


def _parse_str_list(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        parts = [p.strip() for p in value.split(",")]
    elif isinstance(value, list):
        if not all(isinstance(p, str) for p in value):
            raise ValueError("must be a list of strings")
        parts = [p.strip() for p in value]
    else:
        raise ValueError("must be a list of strings")
    seen: list[str] = []
    for p in parts:
        if p and p not in seen:
            seen.append(p)
    return tuple(seen)


def _parse_max(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError("must be a positive integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 1:
        raise ValueError("must be a positive integer")
    return value


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([mhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks", "": "days"}


def parse_duration(value: object) -> timedelta:
    """Parse `30m`, `24h`, `7d`, `2w`, or a bare number of days."""
    if isinstance(value, bool):
        raise ValueError("must be a duration such as 7d or 24h")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError("must be a duration such as 7d or 24h")
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError("must be a duration such as 7d or 24h")
    amount = int(match.group(1))
    if amount < 1:
        raise ValueError("must be a positive duration")
    unit = _DURATION_UNITS[match.group(2).lower()]
    return timedelta(**{unit: amount})


def _parse_expires(value: object) -> timedelta | None:
    if value is None or value is False:
        return None
    return parse_duration(value)


def _parse_project(value: object) -> str | None:
    url = _parse_str(value)
    if url is None:
        return None
    parse_project_url(url)
    return url.strip()


def _parse_views(value: object) -> tuple[ProjectView, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError("must be a list of views")
    views: list[ProjectView] = []
    for raw in value:
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw["name"].strip():
            raise ValueError("each view needs a name")
        layout = str(raw.get("layout") or "table").strip().lower()
        if layout not in VIEW_LAYOUTS:
            raise ValueError(f"view layout must be one of {', '.join(sorted(VIEW_LAYOUTS))}")
        view_filter = raw.get("filter")
        if view_filter is not None and not isinstance(view_filter, str):
            raise ValueError("view filter must be a string")
        views.append(ProjectView(name=raw["name"].strip(), layout=layout, filter=view_filter))
    return tuple(views)


_FIELD_PARSERS: dict[str, Callable[[object], Any]] = {
    "max": _parse_max,
    "github_token": _parse_str,
    "title_prefix": _parse_str,
    "labels": _parse_str_list,
    "allowed_labels": _parse_str_list,
    "required_labels": _parse_str_list,
    "required_title_prefix": _parse_str,
    "default_comment": _parse_str,
    "expires": _parse_expires,
    "group": _parse_bool,
    "close_older_issues": _parse_bool,
    "hide_older_comments": _parse_bool,
    "draft": _parse_bool,
    "base_branch": _parse_str,
    "default_project": _parse_project,
    "views": _parse_views,
}

_OPTION_ALIASES: dict[str, str] = {
    "allowed": "allowed_labels",
    "comment": "default_comment",
    "project": "default_project",
    "expire": "expires",
}


def _option_key(raw_key: str) -> str:
    key = raw_key.strip().lower().replace("-", "_")
    return _OPTION_ALIASES.get(key, key)


def build_policy(action_type: ActionType, options: Mapping[str, Any] | None) -> ActionPolicy:
    """Build the typed policy for one action type from its compiled options.

    Raises:
        FatalConfigError: If an option has an invalid value.
    """
    policy_cls = _POLICY_CLASSES[action_type]
    known = set(policy_cls.__dataclass_fields__)
    values: dict[str, Any] = {"max": DEFAULT_MAX[action_type]}

    for raw_key, raw_value in (options or {}).items():
        key = _option_key(str(raw_key))
        if key not in known:
            logger.warning("Ignoring unsupported option '%s' for %s", raw_key, action_type.value)
            continue
        try:
            values[key] = _FIELD_PARSERS[key](raw_value)
        except (ValueError, SafeError) as exc:
            raise FatalConfigError(f"Invalid '{raw_key}' for {action_type.value}: {exc}") from exc

    return policy_cls(**values)


def _parse_messages(raw: object) -> MessagesConfig:
    if raw is None:
        return MessagesConfig()
    if not isinstance(raw, dict):
        raise FatalConfigError("'messages' must be an object")
    values: dict[str, str | None] = {}
    for key, value in raw.items():
        attr = str(key).strip().lower().replace("-", "_")
        if attr not in MessagesConfig.__dataclass_fields__:
            logger.warning("Ignoring unsupported message template '%s'", key)
            continue
        if value is not None and not isinstance(value, str):
            raise FatalConfigError(f"Message template '{key}' must be a string")
        values[attr] = value
    return MessagesConfig(**values)


def parse_policy_document(document: Mapping[str, Any]) -> tuple[PolicyStore, MessagesConfig]:
    """Parse a compiled configuration document into policies and message templates."""
    policies: dict[ActionType, ActionPolicy] = {}
    messages = MessagesConfig()
    for raw_key, options in document.items():
        if str(raw_key).strip().lower() == "messages":
            messages = _parse_messages(options)
            continue
        action_type = ActionType.from_wire(raw_key)
        if action_type is None:
            raise FatalConfigError(f"Unknown safe output type in configuration: '{raw_key}'")
        if options is False:
            continue
        if options is True:
            options = None
        if options is not None and not isinstance(options, dict):
            raise FatalConfigError(f"Configuration for {action_type.value} must be an object")
        policies[action_type] = build_policy(action_type, options)
    return PolicyStore(policies), messages


def _load_document(env: Mapping[str, str]) -> dict[str, Any]:
    inline = env.get("SAFE_OUTPUTS_CONFIG")
    path_raw = env.get("SAFE_OUTPUTS_CONFIG_PATH")
    if inline:
        text = inline
    elif path_raw:
        try:
            text = Path(path_raw).read_text(encoding="utf-8")
        except OSError as exc:
            raise FatalConfigError("Safe outputs configuration file is missing or unreadable") from exc
    else:
        raise FatalConfigError(
            "Missing safe outputs configuration",
            hint="Set SAFE_OUTPUTS_CONFIG_PATH or SAFE_OUTPUTS_CONFIG",
        )
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FatalConfigError("Safe outputs configuration is not valid JSON") from exc
    if not isinstance(document, dict):
        raise FatalConfigError("Safe outputs configuration must be a JSON object")
    return document


def _load_app_credentials(env: Mapping[str, str]) -> GitHubAppCredentials | None:
    app_id_raw = env.get("GITHUB_APP_ID")
    installation_id_raw = env.get("GITHUB_APP_INSTALLATION_ID")
    private_key_path_raw = env.get("GITHUB_APP_PRIVATE_KEY_PATH")
    if not (app_id_raw or installation_id_raw or private_key_path_raw):
        return None
    if not app_id_raw or not installation_id_raw or not private_key_path_raw:
        raise FatalConfigError(
            "Incomplete GitHub App configuration",
            hint="Set GITHUB_APP_ID, GITHUB_APP_INSTALLATION_ID and GITHUB_APP_PRIVATE_KEY_PATH together",
        )
    try:
        app_id = int(app_id_raw)
        installation_id = int(installation_id_raw)
    except ValueError as exc:
        raise FatalConfigError("GITHUB_APP_ID and GITHUB_APP_INSTALLATION_ID must be integers") from exc

    key_path = Path(private_key_path_raw)
    if not key_path.is_absolute():
        raise FatalConfigError("GITHUB_APP_PRIVATE_KEY_PATH must be an absolute path")
    # Fail fast if unreadable; never echo the path.
    try:
        if not key_path.is_file():
            raise FatalConfigError("GitHub App private key file is missing or not a file")
        _ = key_path.read_bytes()
    except SafeError:
        raise
    except OSError as exc:
        raise FatalConfigError("GitHub App private key file is unreadable") from exc
    return GitHubAppCredentials(app_id=app_id, installation_id=installation_id, private_key_path=key_path)


def _resolve_credentials(policies: PolicyStore, env: Mapping[str, str]) -> Credentials:
    default_token = env.get("SAFE_OUTPUTS_GITHUB_TOKEN") or env.get("GITHUB_TOKEN") or None
    project_token = env.get("SAFE_OUTPUTS_PROJECT_TOKEN") or None
    app = _load_app_credentials(env)

    per_type: dict[ActionType, str] = {}
    for action_type in policies:
        ref = policies.get(action_type).github_token
        if ref is None:
            continue
        value = env.get(ref)
        if not value:
            raise FatalConfigError(f"Credential '{ref}' referenced by {action_type.value} is not set")
        per_type[action_type] = value

    needs_default = [
        t for t in policies if t is not ActionType.NOOP and t not in PROJECT_SCOPED_TYPES and t not in per_type
    ]
    if needs_default and default_token is None and app is None:
        raise FatalConfigError(
            "No GitHub credential configured",
            hint="Set GITHUB_TOKEN, SAFE_OUTPUTS_GITHUB_TOKEN, or the GITHUB_APP_* variables",
        )

    for action_type in policies:
        if action_type in PROJECT_SCOPED_TYPES and action_type not in per_type and project_token is None:
            raise FatalConfigError(
                f"{action_type.value} requires a project credential",
                hint="Set SAFE_OUTPUTS_PROJECT_TOKEN or configure github-token for this type",
            )

    return Credentials(
        default_token=default_token,
        project_token=project_token,
        app=app,
        per_type=MappingProxyType(per_type),
    )


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load and validate configuration from the environment.

    Raises:
        FatalConfigError: If configuration is missing/invalid.
    """
    env = os.environ if environ is None else environ
    policies, messages = parse_policy_document(_load_document(env))
    if not len(policies):
        raise FatalConfigError("No safe output types are enabled")

    credentials = _resolve_credentials(policies, env)

    audit_path_raw = env.get("SAFE_OUTPUTS_LOG_PATH")
    audit_path: Path | None = None
    if audit_path_raw:
        p = Path(audit_path_raw)
        if not p.is_absolute():
            raise FatalConfigError("SAFE_OUTPUTS_LOG_PATH must be an absolute path when set")
        audit_path = p

    api_base_url = (env.get("GITHUB_API_URL") or "https://api.github.com").rstrip("/")
    if not api_base_url.startswith("https://"):
        raise FatalConfigError("GITHUB_API_URL must use https")

    for action_type in policies:
        logger.info("Enabled %s (max=%s)", action_type.value, policies.get(action_type).max)

    return AppConfig(
        policies=policies,
        messages=messages,
        credentials=credentials,
        audit_log_path=audit_path,
        api_base_url=api_base_url,
        limits=LimitsConfig(),
    )
