"""GitHubApi over mocked HTTP: request shapes and response parsing."""

from __future__ import annotations

import json

import httpx
import pytest
from safe_outputs_mcp.config import LimitsConfig
from safe_outputs_mcp.errors import ExecutionError, SafeError
from safe_outputs_mcp.execution import run_primary
from safe_outputs_mcp.github_api import GitHubApi
from safe_outputs_mcp.github_client import GitHubClient
from safe_outputs_mcp.github_graphql_client import GitHubGraphQLClient
from safe_outputs_mcp.scope import parse_project_url


async def _token() -> str:
    return "tok"


def _api(handler) -> GitHubApi:
    limits = LimitsConfig(max_attempts=1, max_backoff_s=0.0)
    transport = httpx.MockTransport(handler)
    return GitHubApi(
        rest=GitHubClient(token_provider=_token, limits=limits, transport=transport),
        graphql=GitHubGraphQLClient(token_provider=_token, limits=limits, transport=transport),
    )


@pytest.mark.asyncio
async def test_get_pull_request_reduces_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/octo/repo/pulls/5"
        return httpx.Response(
            200,
            json={
                "number": 5,
                "id": 55,
                "node_id": "PR_5",
                "title": "[bot] bump",
                "state": "open",
                "labels": [{"name": "deps"}, {"name": "bot"}],
                "html_url": "https://github.com/octo/repo/pull/5",
                "body": None,
            },
        )

    pr = await _api(handler).get_pull_request("octo", "repo", 5)

    assert pr["labels"] == ["deps", "bot"]
    assert pr["url"] == "https://github.com/octo/repo/pull/5"
    assert pr["body"] == ""


@pytest.mark.asyncio
async def test_unexpected_shape_is_safe_error() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"message": "hi"})

    with pytest.raises(SafeError, match="Unexpected issue response"):
        await _api(handler).get_issue("octo", "repo", 1)


@pytest.mark.asyncio
async def test_close_issue_sends_state_reason() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"number": 3, "state": "closed"})

    await _api(handler).close_issue("octo", "repo", 3, state_reason="not_planned")

    assert seen == {"method": "PATCH", "body": {"state": "closed", "state_reason": "not_planned"}}


@pytest.mark.asyncio
async def test_remove_label_reports_absent_label() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.raw_path.endswith(b"/labels/needs%20triage")
        return httpx.Response(404, json={"message": "Label does not exist"})

    assert await _api(handler).remove_label("octo", "repo", 1, "needs triage") is False


@pytest.mark.asyncio
async def test_remove_label_propagates_other_errors() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    with pytest.raises(SafeError) as exc:
        await _api(handler).remove_label("octo", "repo", 1, "bug")
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_search_open_issues_queries_body_text() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["q"] = request.url.params["q"]
        return httpx.Response(200, json={"items": [{"number": 9, "state": "open", "body": "marker"}]})

    items = await _api(handler).search_open_issues("octo", "repo", text="safe-outputs-workflow: Triage")

    assert seen["q"] == 'repo:octo/repo is:issue is:open in:body "safe-outputs-workflow: Triage"'
    assert items[0]["number"] == 9


@pytest.mark.asyncio
async def test_get_project_parses_fields_and_views() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert "organization(login: $login)" in body["query"]
        assert body["variables"] == {"login": "ORG", "number": 1}
        return httpx.Response(
            200,
            json={
                "data": {
                    "owner": {
                        "projectV2": {
                            "id": "PVT_1",
                            "title": "Roadmap",
                            "url": "https://github.com/orgs/ORG/projects/1",
                            "fields": {
                                "nodes": [
                                    {
                                        "__typename": "ProjectV2SingleSelectField",
                                        "id": "F_status",
                                        "name": "Status",
                                        "dataType": "SINGLE_SELECT",
                                        "options": [{"id": "O_todo", "name": "Todo"}],
                                    },
                                    {"__typename": "ProjectV2Field", "id": "F_pts", "name": "Points", "dataType": "NUMBER"},
                                    {"__typename": "ProjectV2Field"},
                                ]
                            },
                            "views": {"nodes": [{"name": "Board", "layout": "BOARD_LAYOUT"}]},
                        }
                    }
                }
            },
        )

    info = await _api(handler).get_project(parse_project_url("https://github.com/orgs/ORG/projects/1"))

    assert info.project_id == "PVT_1"
    assert [f.name for f in info.fields] == ["Status", "Points"]
    status = info.find_field("status")
    assert status is not None and status.options == {"Todo": "O_todo"}
    assert info.find_field("Points").data_type == "number"
    assert info.views == (("Board", "board"),)


@pytest.mark.asyncio
async def test_get_project_not_found() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"owner": {"projectV2": None}}})

    with pytest.raises(SafeError) as exc:
        await _api(handler).get_project(parse_project_url("https://github.com/users/me/projects/4"))

    assert exc.value.hint == "Project not found: https://github.com/users/me/projects/4"


@pytest.mark.asyncio
async def test_list_comments_reads_every_page() -> None:
    pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        pages.append(request.url.params["page"])
        assert request.url.params["per_page"] == "100"
        count = 100 if page == 1 else 7
        first = (page - 1) * 100
        return httpx.Response(200, json=[{"id": first + i, "node_id": f"C{first + i}", "body": "x"} for i in range(count)])

    comments = await _api(handler).list_comments("octo", "repo", 3)

    assert pages == ["1", "2"]
    assert len(comments) == 107
    assert comments[-1]["id"] == 106


@pytest.mark.asyncio
async def test_search_stops_after_page_limit() -> None:
    pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        pages.append(request.url.params["page"])
        return httpx.Response(200, json={"items": [{"number": 1, "state": "open"}] * 100})

    items = await _api(handler).search_open_issues("octo", "repo", text="marker")

    assert len(pages) == 10
    assert len(items) == 1000


@pytest.mark.asyncio
async def test_integration_permission_error_reaches_the_caller() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "Resource not accessible by integration"})

    with pytest.raises(ExecutionError) as exc:
        await run_primary("Failed to close pull request #1", _api(handler).close_pull_request("octo", "repo", 1))

    assert str(exc.value) == "Failed to close pull request #1: Resource not accessible by integration"
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_status_is_reported_when_github_sends_no_message() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(ExecutionError) as exc:
        await run_primary("Failed to close pull request #1", _api(handler).close_pull_request("octo", "repo", 1))

    assert str(exc.value) == "Failed to close pull request #1: HTTP 502"
