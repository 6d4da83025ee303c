"""pytest fixtures for RouteGate."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routegate.metrics import MetricsRegistry, reset_metrics
from routegate.models import Route
from routegate.server import RouteGateServer, ServerOptions


class FakeRuntime:
    """Stand-in for the agent runtime handle."""

    def __init__(self) -> None:
        self.name = "test-runtime"


class TokenAuth:
    """Token table auth provider that records every call."""

    def __init__(
        self,
        tokens: dict[str, dict[str, Any]] | None = None,
        *,
        denied_paths: set[str] | None = None,
    ) -> None:
        self.tokens = tokens if tokens is not None else {"good-token": {"id": "user-1"}}
        self.denied_paths = denied_paths or set()
        self.authenticate_calls: list[str] = []
        self.authorize_calls: list[tuple[str, str]] = []

    async def authenticate_token(self, token: str, request: Any) -> dict[str, Any] | None:
        self.authenticate_calls.append(token)
        return self.tokens.get(token)

    async def authorize(self, path: str, method: str, principal: Any, context: Any) -> bool:
        self.authorize_calls.append((method, path))
        return path not in self.denied_paths


class HandlerCalls:
    """Side-effect counter for route handlers."""

    def __init__(self) -> None:
        self.inputs: list[dict[str, Any]] = []

    @property
    def count(self) -> int:
        return len(self.inputs)

    def record(self, handler_input: dict[str, Any]) -> None:
        self.inputs.append(handler_input)


@pytest.fixture(autouse=True)
def metrics() -> MetricsRegistry:
    return reset_metrics()


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def calls() -> HandlerCalls:
    return HandlerCalls()


@pytest.fixture()
def echo_route(calls: HandlerCalls) -> Route:
    async def echo(handler_input: dict[str, Any]) -> dict[str, Any]:
        calls.record(handler_input)
        return {"ok": True}

    return Route(path="/echo", method="GET", handler=echo)


@pytest.fixture()
def build_app(runtime: FakeRuntime) -> Callable[..., FastAPI]:
    def _build(routes: list[Route], **options: Any) -> FastAPI:
        app = FastAPI()
        options.setdefault("runtime", runtime)
        server = RouteGateServer(ServerOptions(app=app, **options))
        server.init(routes)
        app.state.routegate = server
        return app

    return _build


@pytest.fixture()
def build_client(build_app: Callable[..., FastAPI]) -> Callable[..., TestClient]:
    def _build(routes: list[Route], **options: Any) -> TestClient:
        return TestClient(build_app(routes, **options))

    return _build


@pytest.fixture()
async def async_client_factory() -> AsyncIterator[Callable[[FastAPI], AsyncClient]]:
    clients: list[AsyncClient] = []

    def _build(app: FastAPI) -> AsyncClient:
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield _build
    for client in clients:
        await client.aclose()


@pytest.fixture()
def token_auth() -> TokenAuth:
    return TokenAuth()
