"""Route descriptors and wire payloads for RouteGate.

This module defines the data structures shared by the dispatch pipeline:
- Route descriptors handed over by the external route registry
- Response-type and stream-format tags
- Error payloads returned to clients

Route descriptors are frozen dataclasses (they carry callables and schema
types); client-facing payloads are Pydantic models.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ResponseType(StrEnum):
    """How a route's handler result is turned into a response."""

    JSON = "json"
    STREAM = "stream"
    DATASTREAM_RESPONSE = "datastream-response"
    MCP_HTTP = "mcp-http"
    MCP_SSE = "mcp-sse"


class StreamFormat(StrEnum):
    """Framing used for streaming responses."""

    SSE = "sse"
    NDJSON = "ndjson"


@dataclass(frozen=True)
class Route:
    """Immutable route descriptor produced by the route registry.

    Attributes:
        path: Path pattern with named segments (``/agents/:agent_id`` or
            ``/agents/{agent_id}``).
        method: HTTP method, normalized to upper case.
        handler: Callable receiving the merged handler input mapping. May be
            a coroutine function.
        response_type: Response contract of the handler result.
        stream_format: Framing for ``stream`` routes (record-separated JSON
            when unset).
        path_schema: Optional schema for path parameters.
        query_schema: Optional schema for query parameters.
        body_schema: Optional schema for the request body.
        summary: Optional one-line description used for the OpenAPI entry.

    Example:
        ```python
        route = Route(
            path="/agents/:agent_id/stream",
            method="POST",
            handler=stream_agent,
            response_type="stream",
            stream_format="ndjson",
            body_schema=StreamAgentBody,
        )
        ```
    """

    path: str
    method: str
    handler: Callable[[dict[str, Any]], Any]
    response_type: ResponseType = ResponseType.JSON
    stream_format: StreamFormat | None = None
    path_schema: Any = None
    query_schema: Any = None
    body_schema: Any = None
    summary: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.strip().upper())
        object.__setattr__(self, "response_type", ResponseType(self.response_type))
        if self.stream_format is not None:
            object.__setattr__(self, "stream_format", StreamFormat(self.stream_format))

    @property
    def effective_stream_format(self) -> StreamFormat:
        return self.stream_format or StreamFormat.NDJSON


class ErrorBody(BaseModel):
    """JSON body for every error response.

    Attributes:
        error: Machine-readable error code (``Unauthorized``, ``Forbidden``,
            ``VALIDATION_ERROR``, ``ERROR``, ``INTERNAL_ERROR``).
        message: Human-readable message, when one may be disclosed.
        details: Structured validation issues, when available.
    """

    error: str = Field(..., description="Error code")
    message: str | None = Field(default=None, description="Error message")
    details: list[Any] | None = Field(
        default=None, description="Structured issue list"
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
