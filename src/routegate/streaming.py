"""Streaming response encoder (SSE and record-separated JSON).

Frames:
    SSE:     ``data: <json>\\n\\n``, terminated by ``data: [DONE]\\n\\n``
    NDJSON:  ``<json>\\x1e`` per chunk, no terminator

Stream routes that declare no format use the record-separated framing.

Chunks are pulled one at a time from the handler's chunk source, redacted
individually (no cross-chunk buffering), serialized and framed. An upstream
error closes the source and ends the response without a completion marker.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

from fastapi.encoders import jsonable_encoder
from starlette.responses import StreamingResponse

from routegate.context import CancellationSignal
from routegate.errors import StreamSourceError
from routegate.logging import get_logger
from routegate.metrics import get_metrics
from routegate.models import Route, StreamFormat
from routegate.redaction import redact_stream_chunk

logger = get_logger(__name__)

RECORD_SEPARATOR = "\x1e"
SSE_DONE = "data: [DONE]\n\n"


def stream_headers(stream_format: StreamFormat) -> dict[str, str]:
    is_sse = stream_format is StreamFormat.SSE
    headers = {
        "Content-Type": "text/event-stream" if is_sse else "text/plain",
        "Transfer-Encoding": "chunked",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }
    if is_sse:
        headers["X-Accel-Buffering"] = "no"
    return headers


def format_frame(payload: str, stream_format: StreamFormat) -> str:
    if stream_format is StreamFormat.SSE:
        return f"data: {payload}\n\n"
    return payload + RECORD_SEPARATOR


async def _iterate_sync(source: Iterable[Any]) -> AsyncIterator[Any]:
    iterator = iter(source)
    try:
        for item in iterator:
            yield item
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()


def resolve_chunk_source(result: Any) -> AsyncIterator[Any]:
    """Return an async iterator over the result's ``full_stream``."""
    source = getattr(result, "full_stream", None)
    if source is None and isinstance(result, Mapping):
        source = result.get("full_stream", result.get("fullStream"))
    if source is None:
        raise StreamSourceError("Stream result must have a full_stream chunk source")
    if hasattr(source, "__aiter__"):
        return aiter(source)
    if isinstance(source, Iterable) and not isinstance(source, str | bytes | Mapping):
        return _iterate_sync(source)
    raise StreamSourceError("full_stream must be an iterable of chunks")


async def close_source(source: AsyncIterator[Any]) -> None:
    """Cancel the upstream chunk source if it supports it."""
    closer = getattr(source, "aclose", None) or getattr(source, "cancel", None)
    if closer is None:
        return
    try:
        result = closer()
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning("stream_source_close_failed", exc_info=True)


class StreamEncoder:
    """Turn a handler's chunk source into a framed ``StreamingResponse``."""

    def __init__(self, *, redact: bool = True) -> None:
        self.redact = redact

    def serialize(self, chunk: Any) -> str:
        value = jsonable_encoder(chunk)
        if self.redact:
            value = redact_stream_chunk(value)
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)

    def encode(
        self,
        route: Route,
        result: Any,
        cancel_signal: CancellationSignal | None = None,
    ) -> StreamingResponse:
        stream_format = route.effective_stream_format
        source = resolve_chunk_source(result)
        return StreamingResponse(
            self.frames(source, stream_format, cancel_signal),
            status_code=200,
            headers=stream_headers(stream_format),
        )

    async def frames(
        self,
        source: AsyncIterator[Any],
        stream_format: StreamFormat,
        cancel_signal: CancellationSignal | None = None,
    ) -> AsyncIterator[bytes]:
        metrics = get_metrics()
        metrics.active_streams.inc()
        completed = False
        try:
            while True:
                if cancel_signal is not None and cancel_signal.cancelled:
                    logger.info("stream_cancelled", reason=str(cancel_signal.reason))
                    return
                try:
                    chunk = await anext(source)
                except StopAsyncIteration:
                    break
                except Exception:
                    logger.exception("stream_error", format=stream_format.value)
                    raise
                try:
                    payload = self.serialize(chunk)
                except (TypeError, ValueError):
                    logger.exception("stream_error", format=stream_format.value)
                    raise
                metrics.stream_chunks_total.inc(stream_format.value)
                yield format_frame(payload, stream_format).encode("utf-8")

            completed = True
            if stream_format is StreamFormat.SSE:
                yield SSE_DONE.encode("utf-8")
        finally:
            metrics.active_streams.dec()
            if not completed:
                await close_source(source)
