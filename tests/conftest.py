"""Shared test doubles.

`FakeGitHubApi` mirrors the surface of `safe_outputs_mcp.github_api.GitHubApi`
with in-memory state, records every call, and can be told to fail a named
operation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest
from safe_outputs_mcp.audit import AppendLog
from safe_outputs_mcp.config import ActionType, AppConfig, Credentials, LimitsConfig, MessagesConfig, PolicyStore, build_policy
from safe_outputs_mcp.context import KIND_ISSUE, KIND_PULL_REQUEST, RunContext
from safe_outputs_mcp.dispatcher import Mediator
from safe_outputs_mcp.errors import SafeError
from safe_outputs_mcp.github_api import ProjectInfo
from safe_outputs_mcp.scope import ProjectRef


def not_found() -> SafeError:
    return SafeError(code="GitHub", message="GitHub request failed", hint="Not Found", status_code=404)


class FakeGitHubApi:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self.issues: dict[int, dict[str, Any]] = {}
        self.pulls: dict[int, dict[str, Any]] = {}
        self.comments: dict[int, list[dict[str, Any]]] = {}
        self.search_results: list[dict[str, Any]] = []
        self.projects: dict[str, ProjectInfo] = {}
        self.sub_issues: list[tuple[int, int]] = []
        self.default_branch = "main"
        self._next_id = 500

    # helpers

    def _call(self, name: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append((name, args, kwargs))
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def called(self, name: str) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
        return [(args, kwargs) for n, args, kwargs in self.calls if n == name]

    def add_pull_request(self, number: int, *, title: str = "Some PR", labels: list[str] | None = None, state: str = "open") -> None:
        self.pulls[number] = {
            "number": number,
            "id": number * 10,
            "node_id": f"PR_{number}",
            "title": title,
            "state": state,
            "labels": list(labels or []),
            "url": f"https://github.com/octo/repo/pull/{number}",
            "body": "",
        }

    def add_issue(self, number: int, *, title: str = "Some issue", labels: list[str] | None = None, state: str = "open", body: str = "") -> None:
        self.issues[number] = {
            "number": number,
            "id": number * 10,
            "node_id": f"I_{number}",
            "title": title,
            "state": state,
            "labels": list(labels or []),
            "url": f"https://github.com/octo/repo/issues/{number}",
            "body": body,
        }

    # GitHubApi surface

    async def get_issue(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        self._call("get_issue", owner, repo, number)
        if number not in self.issues:
            raise not_found()
        return dict(self.issues[number])

    async def get_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        self._call("get_pull_request", owner, repo, number)
        if number not in self.pulls:
            raise not_found()
        return dict(self.pulls[number])

    async def close_issue(self, owner: str, repo: str, number: int, *, state_reason: str = "completed") -> dict[str, Any]:
        self._call("close_issue", owner, repo, number, state_reason=state_reason)
        self.issues.setdefault(number, {"number": number, "url": None, "labels": [], "title": ""})["state"] = "closed"
        return dict(self.issues[number])

    async def close_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        self._call("close_pull_request", owner, repo, number)
        self.pulls[number]["state"] = "closed"
        return dict(self.pulls[number])

    async def create_issue(self, owner: str, repo: str, *, title: str, body: str, labels: list[str]) -> dict[str, Any]:
        self._call("create_issue", owner, repo, title=title, body=body, labels=labels)
        number = len(self.issues) + 100
        self.add_issue(number, title=title, labels=labels, body=body)
        return dict(self.issues[number])

    async def search_open_issues(self, owner: str, repo: str, *, text: str) -> list[dict[str, Any]]:
        self._call("search_open_issues", owner, repo, text=text)
        return [dict(i) for i in self.search_results]

    async def add_sub_issue(self, owner: str, repo: str, parent_number: int, sub_issue_id: int) -> None:
        self._call("add_sub_issue", owner, repo, parent_number, sub_issue_id)
        self.sub_issues.append((parent_number, sub_issue_id))

    async def create_pull_request(self, owner: str, repo: str, *, title: str, body: str, head: str, base: str, draft: bool) -> dict[str, Any]:
        self._call("create_pull_request", owner, repo, title=title, body=body, head=head, base=base, draft=draft)
        number = len(self.pulls) + 200
        self.add_pull_request(number, title=title)
        return dict(self.pulls[number])

    async def get_default_branch(self, owner: str, repo: str) -> str:
        self._call("get_default_branch", owner, repo)
        return self.default_branch

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> dict[str, Any]:
        self._call("create_comment", owner, repo, number, body)
        comment_id = self._new_id()
        comment = {"id": comment_id, "node_id": f"IC_{comment_id}", "body": body}
        self.comments.setdefault(number, []).append(comment)
        return {"id": comment_id, "node_id": comment["node_id"], "url": f"https://github.com/octo/repo/issues/{number}#issuecomment-{comment_id}"}

    async def list_comments(self, owner: str, repo: str, number: int) -> list[dict[str, Any]]:
        self._call("list_comments", owner, repo, number)
        return [dict(c) for c in self.comments.get(number, [])]

    async def minimize_comment(self, node_id: str) -> None:
        self._call("minimize_comment", node_id)

    async def add_labels(self, owner: str, repo: str, number: int, labels: list[str]) -> list[str]:
        self._call("add_labels", owner, repo, number, labels)
        return list(labels)

    async def remove_label(self, owner: str, repo: str, number: int, label: str) -> bool:
        self._call("remove_label", owner, repo, number, label)
        target = self.issues.get(number) or self.pulls.get(number)
        if target is None or label not in target["labels"]:
            return False
        target["labels"].remove(label)
        return True

    async def get_project(self, ref: ProjectRef) -> ProjectInfo:
        self._call("get_project", ref)
        project = self.projects.get(ref.url)
        if project is None:
            raise SafeError(code="GitHub", message="Project not found", hint=f"Project not found: {ref.url}")
        return project

    async def get_content_node_id(self, owner: str, repo: str, number: int) -> str:
        self._call("get_content_node_id", owner, repo, number)
        return f"I_{number}"

    async def add_project_item(self, project_id: str, content_id: str) -> str:
        self._call("add_project_item", project_id, content_id)
        return f"PVTI_{content_id}"

    async def add_project_draft_issue(self, project_id: str, *, title: str, body: str | None) -> str:
        self._call("add_project_draft_issue", project_id, title=title, body=body)
        return "PVTI_draft"

    async def set_project_field_value(self, project_id: str, item_id: str, field_id: str, value: dict[str, Any]) -> None:
        self._call("set_project_field_value", project_id, item_id, field_id, value)

    async def create_project_status_update(
        self, project_id: str, *, body: str, status: str, start_date: str | None, target_date: str | None
    ) -> str:
        self._call(
            "create_project_status_update",
            project_id,
            body=body,
            status=status,
            start_date=start_date,
            target_date=target_date,
        )
        return "PVTSU_1"


@pytest.fixture
def fake_api() -> FakeGitHubApi:
    return FakeGitHubApi()


@pytest.fixture
def pr_context() -> RunContext:
    return RunContext(
        owner="octo",
        repo="repo",
        run_id="42",
        workflow_name="Triage",
        event_name="pull_request",
        triggering_number=100,
        triggering_kind=KIND_PULL_REQUEST,
    )


@pytest.fixture
def issue_context() -> RunContext:
    return RunContext(
        owner="octo",
        repo="repo",
        run_id="42",
        workflow_name="Triage",
        event_name="issues",
        triggering_number=7,
        triggering_kind=KIND_ISSUE,
    )


def make_config(document: dict[ActionType, dict[str, Any] | None], *, messages: MessagesConfig | None = None) -> AppConfig:
    return AppConfig(
        policies=PolicyStore({t: build_policy(t, options) for t, options in document.items()}),
        messages=messages or MessagesConfig(),
        credentials=Credentials(default_token="tok", project_token="project-tok"),
        audit_log_path=None,
        limits=LimitsConfig(),
    )


@pytest.fixture
def make_mediator(tmp_path: Path, pr_context: RunContext, fake_api: FakeGitHubApi) -> Callable[..., Mediator]:
    def _make(document: dict[ActionType, dict[str, Any] | None], *, context: RunContext | None = None) -> Mediator:
        return Mediator(
            config=make_config(document),
            context=context or pr_context,
            audit=AppendLog(sink_path=tmp_path / "audit.jsonl", mirror_to_stderr=False),
            api_factory=lambda _action_type: fake_api,  # type: ignore[arg-type,return-value]
        )

    return _make
