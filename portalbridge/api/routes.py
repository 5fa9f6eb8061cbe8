from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, Path, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError

from portalbridge.api.schemas import (
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_INVALID_PARAMS,
    JSONRPC_INVALID_REQUEST,
    JSONRPC_METHOD_NOT_FOUND,
    JSONRPC_PARSE_ERROR,
    MCP_PROTOCOL_VERSION,
    Envelope,
    JsonRpcError,
    JsonRpcRequest,
    JsonRpcResponse,
    ToolCallRequest,
    ToolListResponse,
)
from portalbridge.logging import get_logger
from portalbridge.service.errors import ToolNotFoundError
from portalbridge.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

SERVER_NAME = "portalbridge"
SERVER_VERSION = "0.1.0"


class MethodNotFound(Exception):
    pass


@router.get("/tools", response_model=Envelope, tags=["tools"])
async def list_tools() -> Envelope:
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=ToolListResponse(tools=runtime.tools.list_tools()).model_dump(),
    )


@router.post("/tools/{name}", response_model=Envelope, tags=["tools"])
async def call_tool(
    body: ToolCallRequest,
    name: str = Path(..., min_length=1, max_length=64),
) -> Envelope:
    """Run a tool. Tool-level failures still return 200 with ``success: false``."""
    runtime = get_runtime()
    result = await runtime.tools.call(name, body.arguments)
    return Envelope(status="ok", data=result)


def tool_result_content(result: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap a tool result as an MCP ``tools/call`` result."""
    return {
        "content": [{"type": "text", "text": json.dumps(result, indent=2, default=str)}],
        "isError": not result.get("success", False),
    }


def _rpc_error(request_id: Any, code: int, message: str, data: Any = None) -> JSONResponse:
    response = JsonRpcResponse(id=request_id, error=JsonRpcError(code=code, message=message, data=data))
    return JSONResponse(content=response.dump())


async def _dispatch_rpc(rpc: JsonRpcRequest) -> Any:
    runtime = get_runtime()
    if rpc.method == "initialize":
        return {
            "protocolVersion": rpc.params.get("protocolVersion") or MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }
    if rpc.method == "ping":
        return {}
    if rpc.method == "tools/list":
        return {"tools": runtime.tools.list_tools()}
    if rpc.method == "tools/call":
        name = rpc.params.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("params.name is required")
        arguments = rpc.params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise ValueError("params.arguments must be an object")
        result = await runtime.tools.call(name, arguments)
        return tool_result_content(result)
    raise MethodNotFound(rpc.method)


@router.post("/mcp", tags=["mcp"])
async def mcp_endpoint(request: Request) -> Response:
    """JSON-RPC 2.0 endpoint for MCP clients that speak HTTP."""
    try:
        payload = json.loads(await request.body())
    except ValueError:
        return _rpc_error(None, JSONRPC_PARSE_ERROR, "Parse error")
    request_id = payload.get("id") if isinstance(payload, dict) else None
    try:
        rpc = JsonRpcRequest.model_validate(payload)
    except PydanticValidationError:
        return _rpc_error(request_id, JSONRPC_INVALID_REQUEST, "Invalid Request")

    # Notifications get no response body
    if rpc.id is None and rpc.method.startswith("notifications/"):
        return Response(status_code=202)

    try:
        result = await _dispatch_rpc(rpc)
    except MethodNotFound:
        logger.warning("mcp_method_not_found", method=rpc.method)
        return _rpc_error(rpc.id, JSONRPC_METHOD_NOT_FOUND, f"Method not found: {rpc.method}")
    except ToolNotFoundError as exc:
        return _rpc_error(rpc.id, JSONRPC_INVALID_PARAMS, exc.message, exc.detail)
    except ValueError as exc:
        return _rpc_error(rpc.id, JSONRPC_INVALID_PARAMS, str(exc))
    except Exception as exc:
        logger.exception("mcp_dispatch_failed", method=rpc.method, error_type=type(exc).__name__)
        return _rpc_error(rpc.id, JSONRPC_INTERNAL_ERROR, "Internal error")
    return JSONResponse(content=JsonRpcResponse(id=rpc.id, result=result).dump())
