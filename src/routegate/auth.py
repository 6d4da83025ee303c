"""Two-phase authentication / authorization gate.

The enforcer never raises: provider errors are logged and turned into a
401 (authentication) or 403 (authorization) outcome. A denied outcome means
the route handler must not run.

Provider shape (all callables may be sync or async)::

    class Provider:
        def authenticate_token(self, token, request): ...        # principal | None
        def authorize(self, path, method, principal, context): ...  # bool
        def authorize_user(self, principal, request): ...        # bool

Only ``authenticate_token`` is expected; ``authorize`` is preferred over
``authorize_user`` and neither means an authenticated principal is allowed.
Mappings with the same keys are accepted too.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from routegate.context import RequestScopedContext
from routegate.errors import FORBIDDEN, UNAUTHORIZED, NormalizedError
from routegate.logging import get_logger
from routegate.metrics import get_metrics
from routegate.route_auth import AuthDecision, RouteAuthResolver
from routegate.transport import InboundRequest

logger = get_logger(__name__)

_BEARER_PREFIX = "Bearer "


class AuthProvider(Protocol):
    def authenticate_token(self, token: str, request: Any) -> Any: ...


@dataclass(frozen=True)
class AuthOutcome:
    """Result of the auth gate for one request."""

    allowed: bool
    error: NormalizedError | None = None
    principal: Any = None


ALLOWED = AuthOutcome(allowed=True)


def extract_bearer_token(header: str | None) -> str:
    """Strip a ``Bearer `` prefix; fall back to the raw header, then ``""``."""
    if not header:
        return ""
    if header.startswith(_BEARER_PREFIX):
        return header[len(_BEARER_PREFIX):]
    return header


def _provider_callable(provider: Any, name: str) -> Callable[..., Any] | None:
    if isinstance(provider, Mapping):
        candidate = provider.get(name)
    else:
        candidate = getattr(provider, name, None)
    return candidate if callable(candidate) else None


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AuthEnforcer:
    """Authenticate then authorize each request against a pluggable provider."""

    def __init__(self, provider: Any | None, resolver: RouteAuthResolver | None = None) -> None:
        self.provider = provider
        self.resolver = resolver or RouteAuthResolver()

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def enforce(
        self, inbound: InboundRequest, context: RequestScopedContext
    ) -> AuthOutcome:
        if self.provider is None:
            return ALLOWED

        decision = self.resolver.resolve(inbound.method, inbound.path)
        if decision is AuthDecision.NOT_REQUIRED:
            return ALLOWED

        authenticated = await self._authenticate(inbound)
        if authenticated is None:
            context.auth_error = "unauthorized"
            get_metrics().auth_denials_total.inc("unauthorized")
            return AuthOutcome(allowed=False, error=UNAUTHORIZED)
        principal = authenticated[0]

        if not await self._authorize(inbound, principal, context):
            get_metrics().auth_denials_total.inc("forbidden")
            return AuthOutcome(allowed=False, error=FORBIDDEN, principal=principal)

        context.principal = principal
        return AuthOutcome(allowed=True, principal=principal)

    async def _authenticate(self, inbound: InboundRequest) -> tuple[Any] | None:
        """Return ``(principal,)`` on success, None on failure."""
        authenticate = _provider_callable(self.provider, "authenticate_token")
        if authenticate is None:
            return (None,)

        token = extract_bearer_token(inbound.headers.get("authorization"))
        try:
            principal = await _resolve(authenticate(token, inbound.raw))
        except Exception:
            logger.exception("auth_error", path=inbound.path, method=inbound.method)
            return None
        if not principal:
            return None
        return (principal,)

    async def _authorize(
        self,
        inbound: InboundRequest,
        principal: Any,
        context: RequestScopedContext,
    ) -> bool:
        authorize = _provider_callable(self.provider, "authorize")
        authorize_user = _provider_callable(self.provider, "authorize_user")
        try:
            if authorize is not None:
                allowed = await _resolve(
                    authorize(inbound.path, inbound.method, principal, context)
                )
            elif authorize_user is not None:
                allowed = await _resolve(authorize_user(principal, inbound.raw))
            else:
                return True
        except Exception:
            logger.exception("authorization_error", path=inbound.path, method=inbound.method)
            return False
        return bool(allowed)
