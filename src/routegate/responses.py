"""Response multiplexing by route response type."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.responses import Response

from routegate.context import RequestScopedContext
from routegate.models import ResponseType, Route, StreamFormat
from routegate.streaming import StreamEncoder


def _field(result: Any, name: str) -> Any:
    if isinstance(result, Mapping):
        return result.get(name)
    return getattr(result, name, None)


def _apply_headers(response: Response, headers: Any) -> None:
    if not isinstance(headers, Mapping):
        return
    for key, value in headers.items():
        response.headers[str(key)] = str(value)


def json_response(result: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder(result), status_code=status_code)


class ResponseMultiplexer:
    """Dispatch a handler result to the encoder matching ``route.response_type``."""

    def __init__(self, encoder: StreamEncoder) -> None:
        self.encoder = encoder

    async def send(
        self,
        route: Route,
        result: Any,
        context: RequestScopedContext | None = None,
    ) -> Response:
        cancel_signal = context.cancel_signal if context is not None else None
        match route.response_type:
            case ResponseType.STREAM:
                return self.encoder.encode(route, result, cancel_signal)
            case ResponseType.DATASTREAM_RESPONSE:
                return self._passthrough(result)
            case ResponseType.MCP_HTTP:
                return self._mcp_http(result)
            case ResponseType.MCP_SSE:
                return self._mcp_sse(route, result, cancel_signal)
            case _:
                return json_response(result)

    def _passthrough(self, result: Any) -> Response:
        if isinstance(result, Response):
            return result
        to_response = getattr(result, "to_response", None)
        if callable(to_response):
            response = to_response()
            if isinstance(response, Response):
                return response
            result = response
        return json_response(result)

    def _mcp_http(self, result: Any) -> Response:
        """Copy protocol status and headers; the body is ``result.body`` when present."""
        status = _field(result, "status")
        body = _field(result, "body")
        payload = result if body is None else body

        if isinstance(payload, Response):
            response = payload
            if isinstance(status, int):
                response.status_code = status
        elif isinstance(payload, bytes | str):
            response = Response(content=payload, status_code=status if isinstance(status, int) else 200)
        else:
            response = json_response(payload, status if isinstance(status, int) else 200)
        _apply_headers(response, _field(result, "headers"))
        return response

    def _mcp_sse(self, route: Route, result: Any, cancel_signal: Any) -> Response:
        """Stream MCP messages with SSE framing, whatever the route declares."""
        sse_route = dataclasses.replace(route, stream_format=StreamFormat.SSE)
        stream = _field(result, "stream")
        source = {"full_stream": stream} if stream is not None else result
        response = self.encoder.encode(sse_route, source, cancel_signal)
        _apply_headers(response, _field(result, "headers"))
        return response
