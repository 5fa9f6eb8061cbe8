"""Stdio MCP server exposing the portal tools.

stdout carries JSON-RPC frames, so logging is routed to stderr before any
other module logs.
"""

from __future__ import annotations

import json
import sys
from typing import Any, Dict, List, Optional

import anyio
import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from portalbridge.logging import configure_logging, get_logger

configure_logging(stream=sys.stderr)

from portalbridge.service.errors import ToolNotFoundError  # noqa: E402
from portalbridge.service.runtime import Runtime, get_runtime  # noqa: E402

logger = get_logger(__name__)

SERVER_NAME = "portalbridge"


def build_server(runtime: Optional[Runtime] = None) -> Server:
    server: Server = Server(SERVER_NAME)

    def _runtime() -> Runtime:
        return runtime or get_runtime()

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return [
            types.Tool(
                name=tool["name"],
                description=tool["description"],
                inputSchema=tool["inputSchema"],
            )
            for tool in _runtime().tools.list_tools()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> types.CallToolResult:
        try:
            result = await _runtime().tools.call(name, arguments or {})
        except ToolNotFoundError as exc:
            result = {"success": False, "error_code": exc.error_code, "message": exc.message}
        return types.CallToolResult(
            content=[
                types.TextContent(type="text", text=json.dumps(result, indent=2, default=str))
            ],
            isError=not result.get("success", False),
        )

    return server


async def run_stdio_server(server: Server) -> None:
    logger.info("mcp_server_starting", transport="stdio")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    runtime = get_runtime()
    try:
        anyio.run(run_stdio_server, build_server(runtime))
    finally:
        anyio.run(runtime.aclose)


if __name__ == "__main__":
    main()
