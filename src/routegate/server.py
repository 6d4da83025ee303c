"""FastAPI server adapter for agent runtime routes.

``RouteGateServer`` wires a framework-agnostic route table into a FastAPI
application. ``init`` registers, in order:

1. Body size limit middleware (if configured)
2. Correlation-ID middleware
3. Every route, each dispatched through ``RouteDispatcher``
4. The metrics endpoint (if configured)

Example:
    ```python
    app = FastAPI()
    server = RouteGateServer(
        ServerOptions(
            app=app,
            runtime=runtime,
            prefix="/api",
            auth=TokenAuth(),
            route_auth={"ALL:/api/admin/*": True, "GET:/api/health": False},
        )
    )
    server.init(registry.routes())

    @app.get("/custom")
    async def custom(ctx: RequestScopedContext = Depends(server.context_dependency())):
        return {"tools": sorted(ctx.tools)}
    ```
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.responses import Response

from routegate import __version__
from routegate.auth import AuthEnforcer
from routegate.config import (
    get_log_json,
    get_log_level,
    get_max_body_bytes,
    get_prefix,
    is_stream_redaction_enabled,
)
from routegate.context import ContextDeriver, RequestScopedContext
from routegate.dispatch import RouteDispatcher
from routegate.errors import RouteError
from routegate.logging import bind_request, clear_logging_context, configure_logging, get_logger
from routegate.metrics import get_metrics
from routegate.models import Route
from routegate.params import ParameterPipeline
from routegate.responses import ResponseMultiplexer
from routegate.route_auth import RouteAuthResolver
from routegate.streaming import StreamEncoder
from routegate.transport import FastAPITransport, TransportAdapter, attach_cleanup

logger = get_logger(__name__)

_PARAM_SEGMENT = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class BodyLimit:
    """Reject requests whose declared ``content-length`` exceeds ``max_size`` bytes.

    ``on_error`` receives the limit error and returns the 413 body (or a full
    response); without it a default JSON body is sent.
    """

    max_size: int
    on_error: Callable[[Exception], Any] | None = None


@dataclass
class ServerOptions:
    """Configuration for ``RouteGateServer``.

    Attributes:
        app: FastAPI application the routes are attached to.
        runtime: Agent runtime handle exposed to handlers as ``runtime``.
        prefix: Path prefix for every route (``ROUTEGATE_PREFIX`` when None).
        auth: Auth provider; None disables authentication entirely.
        route_auth: Per-route overrides keyed ``METHOD:PATH`` / ``METHOD:PATH/*``
            against the full request path (prefix included).
        tools: Tool registry exposed to handlers as ``tools``.
        task_store: Optional task store exposed to handlers as ``task_store``.
        stream_redact: Redact stream chunks (``ROUTEGATE_STREAM_REDACT`` when None).
        body_limit: Optional body size limit (``ROUTEGATE_MAX_BODY_BYTES`` when None).
        metrics_path: Serve Prometheus metrics at this path when set.
        transport: Transport adapter; defaults to ``FastAPITransport``.
    """

    app: FastAPI
    runtime: Any = None
    prefix: str | None = None
    auth: Any = None
    route_auth: Mapping[str, bool] | None = None
    tools: Mapping[str, Any] | None = None
    task_store: Any = None
    stream_redact: bool | None = None
    body_limit: BodyLimit | None = None
    metrics_path: str | None = None
    transport: TransportAdapter | None = None


def normalize_prefix(prefix: str | None) -> str:
    value = (prefix or "").strip()
    if not value or value == "/":
        return ""
    if not value.startswith("/"):
        value = "/" + value
    return value.rstrip("/")


def to_router_path(path: str) -> str:
    """Convert ``:name`` segments to Starlette's ``{name}`` syntax."""
    if not path.startswith("/"):
        path = "/" + path
    return _PARAM_SEGMENT.sub(r"{\1}", path)


class RouteGateServer:
    """Attach registry routes to a FastAPI app through the dispatch pipeline."""

    def __init__(self, options: ServerOptions) -> None:
        self.options = options
        self.app = options.app
        self.prefix = normalize_prefix(
            options.prefix if options.prefix is not None else get_prefix()
        )
        redact = (
            options.stream_redact
            if options.stream_redact is not None
            else is_stream_redaction_enabled()
        )
        self.body_limit = options.body_limit
        if self.body_limit is None:
            max_bytes = get_max_body_bytes()
            if max_bytes is not None:
                self.body_limit = BodyLimit(max_size=max_bytes)

        self.transport: TransportAdapter = options.transport or FastAPITransport()
        self.resolver = RouteAuthResolver(options.route_auth)
        self.deriver = ContextDeriver(options.runtime, options.tools, options.task_store)
        self.enforcer = AuthEnforcer(options.auth, self.resolver)
        self.pipeline = ParameterPipeline()
        self.encoder = StreamEncoder(redact=redact)
        self.multiplexer = ResponseMultiplexer(self.encoder)
        self.dispatcher = RouteDispatcher(
            self.deriver, self.enforcer, self.pipeline, self.multiplexer
        )
        self.routes: list[Route] = []
        self._initialized = False

    def init(self, routes: Iterable[Route]) -> None:
        """Register middleware, routes and the metrics endpoint."""
        if self._initialized:
            raise RuntimeError("RouteGateServer is already initialized")
        self.register_body_limit_middleware()
        self.register_context_middleware()
        for route in routes:
            self.register_route(route)
        if self.options.metrics_path:
            self.register_metrics_route(self.options.metrics_path)
        self._initialized = True
        logger.info(
            "server_initialized",
            routes=len(self.routes),
            prefix=self.prefix,
            auth=self.enforcer.enabled,
        )

    def full_path(self, route: Route) -> str:
        return f"{self.prefix}{to_router_path(route.path)}"

    def register_body_limit_middleware(self) -> None:
        limit = self.body_limit
        if limit is None:
            return

        @self.app.middleware("http")
        async def body_limit_middleware(
            request: Request, call_next: Callable[[Request], Awaitable[Response]]
        ) -> Response:
            """Reject requests whose declared body exceeds the limit."""
            content_length = request.headers.get("content-length")
            try:
                size = int(content_length) if content_length else None
            except ValueError:
                size = None
            if size is None or size <= limit.max_size:
                return await call_next(request)

            logger.warning("body_limit_exceeded", size=size, limit=limit.max_size)
            error = RouteError(
                f"Request body size {size} exceeds maximum allowed size of "
                f"{limit.max_size} bytes",
                status=413,
            )
            if limit.on_error is None:
                return JSONResponse(
                    {"error": "Request body too large", "message": error.message},
                    status_code=413,
                )
            payload = limit.on_error(error)
            if isinstance(payload, Response):
                return payload
            return JSONResponse(jsonable_encoder(payload), status_code=413)

    def register_context_middleware(self) -> None:
        @self.app.middleware("http")
        async def correlation_middleware(
            request: Request, call_next: Callable[[Request], Awaitable[Response]]
        ) -> Response:
            """Bind a correlation ID for logging and echo it on the response."""
            correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
            request.state.correlation_id = correlation_id
            bind_request(correlation_id, method=request.method, path=request.url.path)
            try:
                response = await call_next(request)
            finally:
                clear_logging_context()
            response.headers["X-Correlation-ID"] = correlation_id
            return response

    def register_route(self, route: Route) -> None:
        full_path = self.full_path(route)
        label = f"{route.method} {full_path}"

        async def endpoint(request: Request) -> Response:
            inbound = await self.transport.read_request(request)
            try:
                response = await self.dispatcher.dispatch(route, inbound, route_label=label)
            except BaseException:
                if inbound.on_complete is not None:
                    await inbound.on_complete()
                raise
            if inbound.on_complete is not None:
                attach_cleanup(response, inbound.on_complete)
            return response

        self.transport.add_route(
            self.app,
            route.method,
            full_path,
            endpoint,
            summary=route.summary,
        )
        self.routes.append(route)
        logger.debug("route_registered", method=route.method, path=full_path)

    def register_metrics_route(self, path: str) -> None:
        async def metrics_endpoint() -> PlainTextResponse:
            """Expose Prometheus metrics."""
            return PlainTextResponse(
                get_metrics().collect_all(),
                media_type="text/plain; version=0.0.4; charset=utf-8",
            )

        self.app.add_api_route(
            path, metrics_endpoint, methods=["GET"], include_in_schema=False
        )

    def context_dependency(self) -> Callable[[Request], Awaitable[RequestScopedContext]]:
        """Return a FastAPI dependency giving custom routes the derived context."""

        async def dependency(request: Request) -> RequestScopedContext:
            inbound = await self.transport.read_request(request, include_body=False)
            return self.deriver.derive(inbound)

        return dependency

    def get_app(self) -> FastAPI:
        return self.app


def create_app(
    routes: Iterable[Route],
    *,
    title: str = "RouteGate",
    **options: Any,
) -> FastAPI:
    """Create a FastAPI app with logging configured and ``routes`` registered."""
    configure_logging(get_log_level(), json_output=get_log_json())
    app = FastAPI(title=title, version=__version__)
    server = RouteGateServer(ServerOptions(app=app, **options))
    server.init(routes)
    app.state.routegate = server
    return app
