"""Transport adapter contract and its FastAPI / Starlette implementation.

The dispatch core only sees ``InboundRequest`` values; everything that knows
about Starlette's ``Request`` lives in ``FastAPITransport``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from fastapi import FastAPI, Request
from starlette.background import BackgroundTask, BackgroundTasks
from starlette.responses import Response

from routegate.config import get_disconnect_poll_interval
from routegate.context import CancellationSignal
from routegate.logging import get_logger

logger = get_logger(__name__)

Endpoint = Callable[[Request], Awaitable[Response]]

_JSON_CONTENT_TYPES = ("application/json", "+json")


@dataclass
class InboundRequest:
    """Framework-independent view of an inbound request.

    Attributes:
        method: Upper-case HTTP method.
        path: Request path as seen by the router (prefix included).
        headers: Case-insensitive header mapping.
        path_params: Matched path segments.
        query_params: Parsed query; repeated keys map to lists.
        body: Decoded JSON body, or None when absent.
        body_error: Decoding error message for malformed JSON bodies.
        cancel_source: Transport-level disconnect signal, if any.
        correlation_id: Correlation ID bound for this request.
        raw: The framework's own request object (handed to auth providers).
        on_complete: Cleanup to run once the response has been sent.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    path_params: Mapping[str, Any] = field(default_factory=dict)
    query_params: Mapping[str, str | list[str]] = field(default_factory=dict)
    body: Any = None
    body_error: str | None = None
    cancel_source: CancellationSignal | None = None
    correlation_id: str | None = None
    raw: Any = None
    on_complete: Callable[[], Awaitable[None]] | None = None


class TransportAdapter(Protocol):
    """What the dispatch core needs from a concrete HTTP framework."""

    async def read_request(self, raw: Any, *, include_body: bool = True) -> InboundRequest:
        """Convert the framework request into an ``InboundRequest``."""
        ...

    def add_route(self, app: Any, method: str, path: str, endpoint: Endpoint, **kwargs: Any) -> None:
        """Register ``endpoint`` for ``method`` + ``path`` on the framework app."""
        ...


def group_query_items(items: list[tuple[str, str]]) -> dict[str, str | list[str]]:
    """Group multi-valued query items: one value stays a str, repeats become a list."""
    grouped: dict[str, str | list[str]] = {}
    for key, value in items:
        existing = grouped.get(key)
        if existing is None:
            grouped[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            grouped[key] = [existing, value]
    return grouped


def _is_json_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    if not media_type:
        return True
    return any(media_type.endswith(suffix) for suffix in _JSON_CONTENT_TYPES)


def decode_body(payload: bytes, content_type: str) -> tuple[Any, str | None]:
    """Decode a request body. Returns ``(body, error)``.

    Empty and non-JSON bodies decode to None; malformed JSON yields an error.
    """
    if not payload or not _is_json_content_type(content_type):
        return None, None
    try:
        return json.loads(payload), None
    except (UnicodeDecodeError, ValueError) as exc:
        return None, f"Invalid JSON body: {exc}"


class DisconnectWatcher:
    """Poll a Starlette request for client disconnect and cancel a signal."""

    def __init__(self, request: Request, signal: CancellationSignal, interval: float) -> None:
        self.request = request
        self.signal = signal
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._watch())

    async def _watch(self) -> None:
        while not self.signal.cancelled:
            if await self.request.is_disconnected():
                self.signal.cancel("client disconnected")
                return
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class FastAPITransport:
    """``TransportAdapter`` backed by FastAPI / Starlette."""

    def __init__(self, *, disconnect_poll_interval: float | None = None) -> None:
        self.disconnect_poll_interval = (
            disconnect_poll_interval
            if disconnect_poll_interval is not None
            else get_disconnect_poll_interval()
        )

    async def read_request(self, raw: Request, *, include_body: bool = True) -> InboundRequest:
        body: Any = None
        body_error: str | None = None
        if include_body:
            body, body_error = decode_body(
                await raw.body(), raw.headers.get("content-type", "")
            )

        inbound = InboundRequest(
            method=raw.method.upper(),
            path=raw.url.path,
            headers=raw.headers,
            path_params={
                key: value
                for key, value in raw.path_params.items()
                if isinstance(value, str)
            },
            query_params=group_query_items(raw.query_params.multi_items()),
            body=body,
            body_error=body_error,
            correlation_id=getattr(raw.state, "correlation_id", None),
            raw=raw,
        )

        if include_body:
            # The body is fully read; polling receive() is safe from here on.
            signal = CancellationSignal()
            watcher = DisconnectWatcher(raw, signal, self.disconnect_poll_interval)
            watcher.start()
            inbound.cancel_source = signal
            inbound.on_complete = watcher.stop
        return inbound

    def add_route(
        self,
        app: FastAPI,
        method: str,
        path: str,
        endpoint: Endpoint,
        **kwargs: Any,
    ) -> None:
        app.add_api_route(path, endpoint, methods=[method.upper()], **kwargs)


def attach_cleanup(response: Response, cleanup: Callable[[], Awaitable[None]]) -> Response:
    """Run ``cleanup`` after the response is sent, keeping any existing background work."""
    task = BackgroundTask(cleanup)
    if response.background is None:
        response.background = task
    else:
        response.background = BackgroundTasks(tasks=[response.background, task])
    return response
