"""Run context derived from the CI environment.

Provides the repository being operated on, the run identity, and the issue or
pull request that triggered the run. The triggering entity is the fallback
target when a request omits an explicit number.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import FatalConfigError

logger = logging.getLogger(__name__)

KIND_ISSUE = "issue"
KIND_PULL_REQUEST = "pull_request"


@dataclass(frozen=True, slots=True)
class RunContext:
    """Ambient facts about the current workflow run."""

    owner: str
    repo: str
    run_id: str | None = None
    workflow_name: str | None = None
    server_url: str = "https://github.com"
    event_name: str | None = None
    triggering_number: int | None = None
    triggering_kind: str | None = None

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def run_url(self) -> str | None:
        if self.run_id is None:
            return None
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"

    @property
    def triggering_pull_request(self) -> int | None:
        if self.triggering_kind == KIND_PULL_REQUEST:
            return self.triggering_number
        return None

    @property
    def triggering_issue(self) -> int | None:
        if self.triggering_kind == KIND_ISSUE:
            return self.triggering_number
        return None


def triggering_entity(payload: Mapping[str, Any]) -> tuple[int | None, str | None]:
    """Return (number, kind) of the issue or pull request in an event payload."""
    pull_request = payload.get("pull_request")
    if isinstance(pull_request, dict) and isinstance(pull_request.get("number"), int):
        return pull_request["number"], KIND_PULL_REQUEST

    issue = payload.get("issue")
    if isinstance(issue, dict) and isinstance(issue.get("number"), int):
        # issue_comment events on pull requests carry the PR under `issue`.
        if isinstance(issue.get("pull_request"), dict):
            return issue["number"], KIND_PULL_REQUEST
        return issue["number"], KIND_ISSUE

    return None, None


def _read_event_payload(path_raw: str | None) -> dict[str, Any]:
    if not path_raw:
        return {}
    try:
        data = json.loads(Path(path_raw).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read event payload: %s", type(exc).__name__)
        return {}
    return data if isinstance(data, dict) else {}


def load_run_context(environ: Mapping[str, str] | None = None) -> RunContext:
    """Build the run context from GitHub Actions environment variables.

    Raises:
        FatalConfigError: If the repository is not identifiable.
    """
    env = os.environ if environ is None else environ
    repository = env.get("GITHUB_REPOSITORY", "")
    owner, sep, repo = repository.partition("/")
    if not sep or not owner or not repo or "/" in repo:
        raise FatalConfigError("GITHUB_REPOSITORY must be set to <owner>/<repo>")

    payload = _read_event_payload(env.get("GITHUB_EVENT_PATH"))
    number, kind = triggering_entity(payload)

    return RunContext(
        owner=owner,
        repo=repo,
        run_id=env.get("GITHUB_RUN_ID") or None,
        workflow_name=env.get("GITHUB_WORKFLOW") or None,
        server_url=(env.get("GITHUB_SERVER_URL") or "https://github.com").rstrip("/"),
        event_name=env.get("GITHUB_EVENT_NAME") or None,
        triggering_number=number,
        triggering_kind=kind,
    )
