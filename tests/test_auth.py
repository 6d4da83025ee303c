"""Auth enforcer tests."""

from __future__ import annotations

from typing import Any

import pytest

from routegate.auth import AuthEnforcer, extract_bearer_token
from routegate.context import ContextDeriver
from routegate.models import Route
from routegate.route_auth import RouteAuthResolver
from routegate.transport import InboundRequest


def _inbound(path: str = "/secure", method: str = "GET", token: str | None = "good-token") -> InboundRequest:
    headers = {"authorization": f"Bearer {token}"} if token is not None else {}
    return InboundRequest(method=method, path=path, headers=headers)


def _context(runtime: Any):
    return ContextDeriver(runtime).derive(InboundRequest(method="GET", path="/secure"))


def test_extract_bearer_token() -> None:
    assert extract_bearer_token("Bearer abc") == "abc"
    assert extract_bearer_token("abc") == "abc"
    assert extract_bearer_token("") == ""
    assert extract_bearer_token(None) == ""


@pytest.mark.asyncio
async def test_no_provider_is_inert(runtime) -> None:
    enforcer = AuthEnforcer(None)
    outcome = await enforcer.enforce(_inbound(token=None), _context(runtime))
    assert outcome.allowed is True
    assert enforcer.enabled is False


@pytest.mark.asyncio
async def test_authenticated_principal_is_attached(runtime, token_auth) -> None:
    enforcer = AuthEnforcer(token_auth)
    context = _context(runtime)
    outcome = await enforcer.enforce(_inbound(), context)
    assert outcome.allowed is True
    assert context.principal == {"id": "user-1"}
    assert token_auth.authenticate_calls == ["good-token"]
    assert token_auth.authorize_calls == [("GET", "/secure")]


@pytest.mark.asyncio
async def test_unknown_token_is_unauthorized(runtime, token_auth, metrics) -> None:
    enforcer = AuthEnforcer(token_auth)
    context = _context(runtime)
    outcome = await enforcer.enforce(_inbound(token="bad"), context)
    assert outcome.allowed is False
    assert outcome.error is not None
    assert outcome.error.status == 401
    assert outcome.error.body == {"error": "Unauthorized"}
    assert context.auth_error == "unauthorized"
    assert context.principal is None
    assert token_auth.authorize_calls == []
    assert metrics.auth_denials_total.get("unauthorized") == 1


@pytest.mark.asyncio
async def test_authentication_exception_is_unauthorized(runtime) -> None:
    class ExplodingAuth:
        def authenticate_token(self, token: str, request: Any) -> Any:
            raise RuntimeError("database password is hunter2")

    outcome = await AuthEnforcer(ExplodingAuth()).enforce(_inbound(), _context(runtime))
    assert outcome.error is not None
    assert outcome.error.status == 401
    assert outcome.error.body == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_raw_header_used_without_bearer_prefix(runtime, token_auth) -> None:
    inbound = InboundRequest(
        method="GET", path="/secure", headers={"authorization": "good-token"}
    )
    outcome = await AuthEnforcer(token_auth).enforce(inbound, _context(runtime))
    assert outcome.allowed is True
    assert token_auth.authenticate_calls == ["good-token"]


@pytest.mark.asyncio
async def test_missing_header_passes_empty_token(runtime, token_auth) -> None:
    outcome = await AuthEnforcer(token_auth).enforce(_inbound(token=None), _context(runtime))
    assert outcome.allowed is False
    assert token_auth.authenticate_calls == [""]


@pytest.mark.asyncio
async def test_authorize_false_is_forbidden(runtime, token_auth, metrics) -> None:
    token_auth.denied_paths = {"/secure"}
    context = _context(runtime)
    outcome = await AuthEnforcer(token_auth).enforce(_inbound(), context)
    assert outcome.error is not None
    assert outcome.error.status == 403
    assert outcome.error.body == {"error": "Forbidden"}
    assert context.principal is None
    assert metrics.auth_denials_total.get("forbidden") == 1


@pytest.mark.asyncio
async def test_authorize_exception_is_forbidden(runtime) -> None:
    provider = {
        "authenticate_token": lambda token, request: {"id": "u"},
        "authorize": lambda path, method, principal, context: 1 / 0,
    }
    outcome = await AuthEnforcer(provider).enforce(_inbound(), _context(runtime))
    assert outcome.error is not None
    assert outcome.error.status == 403


@pytest.mark.asyncio
async def test_authorize_preferred_over_authorize_user(runtime) -> None:
    seen: list[str] = []

    class Provider:
        def authenticate_token(self, token: str, request: Any) -> Any:
            return {"id": "u"}

        def authorize(self, path: str, method: str, principal: Any, context: Any) -> bool:
            seen.append("authorize")
            return True

        def authorize_user(self, principal: Any, request: Any) -> bool:
            seen.append("authorize_user")
            return False

    outcome = await AuthEnforcer(Provider()).enforce(_inbound(), _context(runtime))
    assert outcome.allowed is True
    assert seen == ["authorize"]


@pytest.mark.asyncio
async def test_sync_authorize_user(runtime) -> None:
    class Provider:
        def authenticate_token(self, token: str, request: Any) -> Any:
            return {"id": "u", "role": "viewer"}

        def authorize_user(self, principal: Any, request: Any) -> bool:
            return principal["role"] == "admin"

    outcome = await AuthEnforcer(Provider()).enforce(_inbound(), _context(runtime))
    assert outcome.error is not None
    assert outcome.error.status == 403


@pytest.mark.asyncio
async def test_not_required_override_skips_provider(runtime, token_auth) -> None:
    resolver = RouteAuthResolver({"GET:/public": False})
    enforcer = AuthEnforcer(token_auth, resolver)
    context = _context(runtime)
    outcome = await enforcer.enforce(_inbound(path="/public", token=None), context)
    assert outcome.allowed is True
    assert context.principal is None
    assert token_auth.authenticate_calls == []


def test_failed_authentication_never_runs_handler(build_client, echo_route, calls, token_auth) -> None:
    client = build_client([echo_route], auth=token_auth)
    response = client.get("/echo", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert calls.count == 0


def test_forbidden_never_runs_handler(build_client, echo_route, calls, token_auth) -> None:
    token_auth.denied_paths = {"/echo"}
    client = build_client([echo_route], auth=token_auth)
    response = client.get("/echo", headers={"Authorization": "Bearer good-token"})
    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden"}
    assert calls.count == 0


def test_principal_reaches_handler(build_client, echo_route, calls, token_auth) -> None:
    client = build_client([echo_route], auth=token_auth)
    response = client.get("/echo", headers={"Authorization": "Bearer good-token"})
    assert response.status_code == 200
    assert calls.inputs[0]["principal"] == {"id": "user-1"}


def test_without_provider_no_auth_statuses(build_client, calls) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        calls.record(handler_input)
        return {"ok": True}

    routes = [
        Route(path=path, method=method, handler=handler)
        for path in ("/a", "/admin/b")
        for method in ("GET", "POST", "DELETE")
    ]
    client = build_client(routes, route_auth={"ALL:/admin/*": True})
    for route in routes:
        response = client.request(route.method, route.path, headers={"Authorization": "junk"})
        assert response.status_code == 200
    assert calls.count == len(routes)


def test_public_exception_under_admin_wildcard(build_client, calls, token_auth) -> None:
    async def handler(handler_input: dict[str, Any]) -> dict[str, Any]:
        calls.record(handler_input)
        return {"ok": True}

    client = build_client(
        [
            Route(path="/admin/public", method="GET", handler=handler),
            Route(path="/admin/secret", method="GET", handler=handler),
        ],
        auth=token_auth,
        route_auth={"ALL:/admin/*": True, "GET:/admin/public": False},
    )
    assert client.get("/admin/public").status_code == 200
    assert client.get("/admin/secret").status_code == 401
    assert calls.count == 1
