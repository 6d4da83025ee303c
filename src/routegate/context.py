"""Request-scoped context derivation.

Every request gets a ``RequestScopedContext`` before authentication or any
route-specific logic runs. The context is passed explicitly through each
pipeline stage; nothing is stored in ambient request-local state.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from routegate.logging import get_logger

if TYPE_CHECKING:
    from routegate.transport import InboundRequest

logger = get_logger(__name__)

REQUEST_CONTEXT_PARAM = "requestContext"


class CancellationSignal:
    """One-shot cancellation flag shared by a request's pipeline stages.

    The signal moves from not-cancelled to cancelled exactly once; later
    ``cancel`` calls are ignored. Listeners run once, synchronously, when the
    transition happens (or immediately if it already happened).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Any = None
        self._listeners: list[Callable[[Any], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Any:
        return self._reason

    def cancel(self, reason: Any = None) -> bool:
        """Cancel the signal. Returns False if it was already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(reason)
        return True

    def add_listener(self, listener: Callable[[Any], None]) -> None:
        if self._event.is_set():
            listener(self._reason)
            return
        self._listeners.append(listener)

    async def wait(self) -> Any:
        await self._event.wait()
        return self._reason


@dataclass
class RequestScopedContext:
    """Per-request values handed to auth, validation, handlers and streams.

    Attributes:
        runtime: Shared agent runtime handle (read-only).
        tools: Shared tool registry (read-only).
        request_context: Request-owned key/value map, merged from the
            ``requestContext`` query parameter and later the request body.
        cancel_signal: Fires when the client disconnects.
        task_store: Optional shared task store for agent-to-agent calls.
        principal: Authenticated principal, set by the auth enforcer.
        auth_error: ``"unauthorized"`` when authentication failed.
        correlation_id: Correlation ID of the request, when known.
    """

    runtime: Any
    tools: Mapping[str, Any]
    request_context: dict[str, Any]
    cancel_signal: CancellationSignal
    task_store: Any = None
    principal: Any = None
    auth_error: str | None = None
    correlation_id: str | None = None


def merge_request_context(
    query_context: Mapping[str, Any] | None,
    body_context: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Merge query- and body-sourced context; body entries win on collision."""
    merged: dict[str, Any] = dict(query_context or {})
    merged.update(body_context or {})
    return merged


def parse_request_context_param(raw: str | list[str] | None) -> dict[str, Any] | None:
    """Parse the JSON-encoded ``requestContext`` query value.

    Malformed JSON or a non-object value is logged and ignored.
    """
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        logger.warning("request_context_invalid", reason=str(exc))
        return None
    if not isinstance(value, dict):
        logger.warning("request_context_invalid", reason="not a JSON object")
        return None
    return value


def bridge_cancellation(source: CancellationSignal | None) -> CancellationSignal:
    """Return a new signal that follows ``source``.

    An already-cancelled source cancels the derived signal immediately;
    otherwise the derived signal listens to it once.
    """
    signal = CancellationSignal()
    if source is None:
        return signal
    if source.cancelled:
        signal.cancel(source.reason)
    else:
        source.add_listener(signal.cancel)
    return signal


class ContextDeriver:
    """Build the ``RequestScopedContext`` for each inbound request."""

    def __init__(
        self,
        runtime: Any,
        tools: Mapping[str, Any] | None = None,
        task_store: Any = None,
    ) -> None:
        self.runtime = runtime
        self.tools: Mapping[str, Any] = tools or {}
        self.task_store = task_store

    def derive(self, inbound: InboundRequest) -> RequestScopedContext:
        query_context = parse_request_context_param(
            inbound.query_params.get(REQUEST_CONTEXT_PARAM)
        )
        return RequestScopedContext(
            runtime=self.runtime,
            tools=self.tools,
            request_context=merge_request_context(query_context, None),
            cancel_signal=bridge_cancellation(inbound.cancel_source),
            task_store=self.task_store,
            correlation_id=inbound.correlation_id,
        )
