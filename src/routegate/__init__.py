"""RouteGate: mount agent runtime routes on FastAPI.

RouteGate sits between a framework-agnostic route registry and a FastAPI
application. Every registered route goes through the same dispatch pipeline:

    - Request context derivation (runtime, tools, request context, abort signal)
    - Authentication and authorization through a pluggable provider
    - Path, query and body validation with pydantic schemas
    - Handler invocation with a merged input mapping
    - Response multiplexing (JSON, SSE / record-separated streams, passthrough,
      MCP HTTP and MCP SSE transports)

Example:
    >>> from fastapi import FastAPI
    >>> from routegate import Route, RouteGateServer, ServerOptions
    >>> app = FastAPI()
    >>> server = RouteGateServer(ServerOptions(app=app, runtime=runtime, prefix="/api"))
    >>> server.init([Route(path="/agents", method="GET", handler=list_agents)])
"""

__version__ = "0.1.0"

from routegate.context import CancellationSignal, RequestScopedContext
from routegate.errors import ErrorKind, RouteError
from routegate.models import Route, ResponseType, StreamFormat
from routegate.route_auth import AuthDecision, RouteAuthResolver
from routegate.server import BodyLimit, RouteGateServer, ServerOptions, create_app

__all__ = [
    "AuthDecision",
    "BodyLimit",
    "CancellationSignal",
    "ErrorKind",
    "RequestScopedContext",
    "ResponseType",
    "Route",
    "RouteAuthResolver",
    "RouteError",
    "RouteGateServer",
    "ServerOptions",
    "StreamFormat",
    "__version__",
    "create_app",
]

