from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

JSONRPC_PARSE_ERROR = -32700
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_INTERNAL_ERROR = -32603

MCP_PROTOCOL_VERSION = "2024-11-05"


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable ``error_code`` of the failure."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    """API envelope format shared by every REST route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ToolCallRequest(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolListResponse(BaseModel):
    tools: List[Dict[str, Any]]


class JsonRpcRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None
    result: Optional[Any] = None
    error: Optional[JsonRpcError] = None

    def dump(self) -> Dict[str, Any]:
        # JSON-RPC carries exactly one of result or error
        body = self.model_dump(exclude_none=True)
        body.setdefault("id", self.id)
        if self.error is None:
            body.setdefault("result", self.result)
        return body
