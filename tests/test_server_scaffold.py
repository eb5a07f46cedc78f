"""MCP server wiring smoke tests."""

from __future__ import annotations

import json

import pytest
from safe_outputs_mcp import dispatcher
from safe_outputs_mcp.__main__ import main
from safe_outputs_mcp.config import ActionType
from safe_outputs_mcp.errors import FatalConfigError
from safe_outputs_mcp.server import CAPABILITIES_URI, STATUS_URI, call_tool, list_resources, list_tools, read_resource


@pytest.fixture
def installed(monkeypatch: pytest.MonkeyPatch, make_mediator):
    mediator = make_mediator({ActionType.NOOP: None, ActionType.ADD_LABELS: {"allowed": ["bug"]}})
    monkeypatch.setattr(dispatcher, "_MEDIATOR", mediator)
    return mediator


@pytest.mark.asyncio
async def test_lists_only_enabled_tools(installed) -> None:
    tools = await list_tools()
    assert sorted(t.name for t in tools) == ["add_labels", "noop"]


@pytest.mark.asyncio
async def test_tools_do_not_emit_secrets_in_metadata(installed) -> None:
    tools = await list_tools()
    as_json = json.dumps([t.model_dump() for t in tools], sort_keys=True)

    assert "ghp_" not in as_json
    assert "github_pat_" not in as_json
    assert "Bearer " not in as_json


@pytest.mark.asyncio
async def test_call_tool_returns_json_text(installed) -> None:
    out = await call_tool("noop", {"message": "Nothing to triage"})

    payload = json.loads(out[0].text)
    assert payload["success"] is True
    assert payload["message"] == "Nothing to triage"
    assert installed.accepted == 1


@pytest.mark.asyncio
async def test_resources(installed) -> None:
    resources = await list_resources()
    assert {str(r.uri).rstrip("/") for r in resources} == {STATUS_URI, CAPABILITIES_URI}

    status = json.loads(await read_resource(STATUS_URI))
    assert status["configured"] is True
    assert status["repository"] == "octo/repo"

    caps = json.loads(await read_resource(CAPABILITIES_URI))
    assert caps["enabled_types"]["noop"] == {"max": 1}

    missing = json.loads(await read_resource("safe-outputs-mcp://nope"))
    assert missing["code"] == "NotFound"


@pytest.mark.asyncio
async def test_status_reports_unconfigured(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail():
        raise FatalConfigError("No safe output types are enabled")

    monkeypatch.setattr(dispatcher, "_MEDIATOR", None)
    monkeypatch.setattr(dispatcher, "build_mediator_from_env", _fail)

    status = json.loads(await read_resource(STATUS_URI))
    assert status["configured"] is False


def test_check_config_lists_enabled_tools(installed, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--check-config"]) == 0

    err = capsys.readouterr().err
    assert "octo/repo: 2 tools enabled (add_labels, noop)" in err


def test_check_config_reports_configuration_errors(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def _fail():
        raise FatalConfigError("No safe output types are enabled", hint="Set SAFE_OUTPUTS_CONFIG")

    monkeypatch.setattr(dispatcher, "_MEDIATOR", None)
    monkeypatch.setattr(dispatcher, "build_mediator_from_env", _fail)

    assert main(["--test"]) == 2
    assert "Configuration error: No safe output types are enabled: Set SAFE_OUTPUTS_CONFIG" in capsys.readouterr().err
