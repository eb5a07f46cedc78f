"""MCP server wiring for safe-outputs-mcp.

The server only forwards tool calls to the mediation layer; it holds no policy
logic of its own. Only the action types enabled for this run are listed.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

try:
    from mcp.server import Server
    from mcp.types import Resource, TextContent, Tool
except ImportError as exc:  # pragma: no cover
    raise ImportError("MCP library not installed. Install with: pip install mcp") from exc

from . import __version__
from .dispatcher import initialize_mediator_from_env
from .errors import SafeError, internal_error

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)

server = Server("safe-outputs-mcp")

STATUS_URI = "safe-outputs-mcp://server-status"
CAPABILITIES_URI = "safe-outputs-mcp://capabilities"


def _resources() -> list[Resource]:
    return [
        Resource(
            uri=STATUS_URI,
            name="Server Status",
            description="Non-secret run configuration and admission counters",
        ),
        Resource(
            uri=CAPABILITIES_URI,
            name="Capabilities",
            description="Enabled safe output types and their limits",
        ),
    ]


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List the enabled safe output tools."""
    mediator = initialize_mediator_from_env()
    tools = [
        Tool(name=tool_name, description=meta["description"], inputSchema=meta["inputSchema"])
        for tool_name, meta in mediator.tool_metadata().items()
    ]
    logger.info("Listed %s tools", len(tools))
    return tools


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Mediate a proposed action and return MCP-compliant TextContent."""
    if not isinstance(arguments, dict):
        arguments = {}

    logger.info("Tool called: %s", name)

    try:
        raw_result = await initialize_mediator_from_env().handle(name, arguments)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.error("Tool %s failed: %s", name, exc)
        raw_result = internal_error("Tool execution failed")
    return [TextContent(type="text", text=json.dumps(raw_result, indent=2, default=str))]


@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    return _resources()


@server.read_resource()
async def read_resource(uri: Any) -> str:
    """Read resource content."""
    uri_s = uri if isinstance(uri, str) else str(uri)

    if uri_s == CAPABILITIES_URI:
        mediator = initialize_mediator_from_env()
        caps = {
            "server": "safe-outputs-mcp",
            "version": __version__,
            "enabled_types": {
                t.tool_name: {"max": mediator.config.policies.get(t).max}
                for t in mediator.config.policies.enabled_types()
            },
            "safety": {
                "agent_holds_no_credentials": True,
                "mutating_calls_attempted_once": True,
                "github_api_url": mediator.config.api_base_url,
            },
        }
        return json.dumps(caps, indent=2)

    if uri_s == STATUS_URI:
        status: dict[str, Any] = {"server": "safe-outputs-mcp", "version": __version__, "configured": False}
        try:
            mediator = initialize_mediator_from_env()
        except SafeError:
            return json.dumps(status, indent=2)
        status["configured"] = True
        status["repository"] = mediator.context.repository
        status["limits"] = {
            "total_timeout_s": mediator.config.limits.total_timeout_s,
            "max_attempts": mediator.config.limits.max_attempts,
            "title_max_bytes": mediator.config.limits.title_max_bytes,
            "body_max_bytes": mediator.config.limits.body_max_bytes,
        }
        status["audit"] = {"file_sink_enabled": mediator.audit.sink_path is not None}
        status["counters"] = mediator.summary()
        return json.dumps(status, indent=2)

    return json.dumps({"success": False, "code": "NotFound", "error": "Unknown resource"}, indent=2)


async def run_server() -> None:
    """Run the server over stdio."""
    # Fail fast on invalid/missing configuration.
    try:
        mediator = initialize_mediator_from_env()
    except SafeError as exc:
        logger.error("Startup configuration error: %s", exc)
        raise

    from mcp.server.stdio import stdio_server

    logger.info(mediator.run_message("started"))
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        logger.info(mediator.run_message("failure" if mediator.failed else "success"))


async def check_server() -> list[str]:
    """Load policy and run context and build every enabled tool; return the tool names."""
    mediator = initialize_mediator_from_env()
    tools = [
        Tool(name=name, description=meta["description"], inputSchema=meta["inputSchema"])
        for name, meta in mediator.tool_metadata().items()
    ]
    _ = _resources()
    names = sorted(t.name for t in tools)
    print(
        f"safe-outputs-mcp {__version__}: {mediator.context.repository}: {len(names)} tools enabled "
        f"({', '.join(names) or 'none'})",
        file=sys.stderr,
    )
    return names
