"""Dispatch pipeline tests."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi import HTTPException

from routegate.auth import AuthEnforcer
from routegate.context import ContextDeriver
from routegate.dispatch import RouteDispatcher, invoke_handler
from routegate.errors import RouteError
from routegate.models import Route
from routegate.params import ParameterPipeline
from routegate.responses import ResponseMultiplexer
from routegate.streaming import StreamEncoder
from routegate.transport import InboundRequest


def _dispatcher(runtime: Any, auth: Any = None) -> RouteDispatcher:
    return RouteDispatcher(
        ContextDeriver(runtime),
        AuthEnforcer(auth),
        ParameterPipeline(),
        ResponseMultiplexer(StreamEncoder()),
    )


@pytest.mark.asyncio
async def test_invoke_handler_sync_and_async() -> None:
    def sync_handler(handler_input: dict[str, Any]) -> int:
        return handler_input["n"] + 1

    async def async_handler(handler_input: dict[str, Any]) -> int:
        return handler_input["n"] * 2

    assert await invoke_handler(Route(path="/", method="get", handler=sync_handler), {"n": 1}) == 2
    assert await invoke_handler(Route(path="/", method="get", handler=async_handler), {"n": 3}) == 6


@pytest.mark.asyncio
async def test_dispatch_records_request_metric(runtime, metrics) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True}

    route = Route(path="/ping", method="GET", handler=handler)
    response = await _dispatcher(runtime).dispatch(
        route, InboundRequest(method="GET", path="/ping")
    )
    assert response.status_code == 200
    assert metrics.requests_total.get("GET /ping", "200") == 1
    assert metrics.handler_duration_seconds.count("GET /ping") == 1


@pytest.mark.asyncio
async def test_auth_failure_skips_handler_metric(runtime, token_auth, metrics) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        return {}

    route = Route(path="/ping", method="GET", handler=handler)
    response = await _dispatcher(runtime, token_auth).dispatch(
        route, InboundRequest(method="GET", path="/ping"), route_label="ping"
    )
    assert response.status_code == 401
    assert metrics.requests_total.get("ping", "401") == 1
    assert metrics.handler_duration_seconds.count("ping") == 0


def test_handler_input_merges_params_and_context(build_client, calls, runtime) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        calls.record(handler_input)
        return {"agent": handler_input["agent_id"]}

    route = Route(path="/agents/:agent_id/generate", method="POST", handler=handler)
    client = build_client([route], tools={"search": "tool"})
    response = client.post(
        '/agents/weather/generate?requestContext={"tenant":"q","region":"eu"}&verbose=1',
        json={"messages": ["hi"], "runtime": "spoofed", "requestContext": {"tenant": "b"}},
    )
    assert response.status_code == 200
    assert response.json() == {"agent": "weather"}
    handler_input = calls.inputs[0]
    assert handler_input["messages"] == ["hi"]
    assert handler_input["verbose"] == "1"
    assert handler_input["runtime"] is runtime
    assert handler_input["tools"] == {"search": "tool"}
    assert handler_input["request_context"] == {"tenant": "b", "region": "eu"}
    assert handler_input["abort_signal"].cancelled is False


def test_each_request_gets_fresh_context(build_client, calls) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        handler_input["request_context"]["touched"] = True
        calls.record(handler_input)
        return {}

    client = build_client([Route(path="/x", method="POST", handler=handler)])
    client.post("/x", json={"requestContext": {"a": 1}})
    client.post("/x", json={})
    assert calls.inputs[1]["request_context"] == {"touched": True}
    assert calls.inputs[0]["abort_signal"] is not calls.inputs[1]["abort_signal"]


def test_sync_handler_over_http(build_client) -> None:
    def handler(handler_input: dict[str, Any]) -> list[int]:
        return [1, 2, 3]

    response = build_client([Route(path="/nums", method="GET", handler=handler)]).get("/nums")
    assert response.json() == [1, 2, 3]


def test_route_error_status(build_client) -> None:
    async def handler(handler_input: dict[str, Any]) -> None:
        raise RouteError("Agent not found", status=404)

    response = build_client([Route(path="/a", method="GET", handler=handler)]).get("/a")
    assert response.status_code == 404
    assert response.json() == {"error": "ERROR", "message": "Agent not found"}


def test_http_exception_from_handler(build_client) -> None:
    async def handler(handler_input: dict[str, Any]) -> None:
        raise HTTPException(status_code=409, detail="conflict")

    response = build_client([Route(path="/a", method="GET", handler=handler)]).get("/a")
    assert response.status_code == 409
    assert response.json() == {"error": "ERROR", "message": "conflict"}


def test_unexpected_error_is_generic_500(build_client) -> None:
    async def handler(handler_input: dict[str, Any]) -> None:
        raise KeyError("internal secret")

    response = build_client([Route(path="/a", method="GET", handler=handler)]).get("/a")
    assert response.status_code == 500
    assert "secret" not in response.text
    assert response.json()["error"] == "INTERNAL_ERROR"


def test_explicit_status_beats_details_status(build_client) -> None:
    async def handler(handler_input: dict[str, Any]) -> None:
        raise RouteError("denied", status=403, details={"status": 500})

    response = build_client([Route(path="/a", method="GET", handler=handler)]).get("/a")
    assert response.status_code == 403


def test_auth_runs_before_validation(build_client, calls, token_auth) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        calls.record(handler_input)
        return {}

    client = build_client(
        [Route(path="/a", method="POST", handler=handler, body_schema=dict[str, int])],
        auth=token_auth,
    )
    response = client.post(
        "/a", content=b"{broken", headers={"content-type": "application/json"}
    )
    assert response.status_code == 401
    assert calls.count == 0
