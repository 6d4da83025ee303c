"""Per-route authentication overrides.

Overrides are keyed ``METHOD:PATH`` or ``METHOD:PATH/*`` with ``ALL`` as the
method wildcard, e.g.::

    {"ALL:/admin/*": True, "GET:/admin/public": False}

A ``True`` value forces authentication, ``False`` disables it, and a request
without a matching key falls back to the server-wide policy.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from enum import StrEnum
from types import MappingProxyType

WILDCARD_METHOD = "ALL"


class AuthDecision(StrEnum):
    REQUIRED = "required"
    NOT_REQUIRED = "not-required"
    DEFAULT = "default"


def _normalize_key(key: str) -> str:
    method, sep, path = key.partition(":")
    if not sep or not method.strip() or not path.startswith("/"):
        raise ValueError(f"Invalid route auth key: {key!r} (expected METHOD:/path)")
    return f"{method.strip().upper()}:{path}"


def _candidate_keys(method: str, path: str) -> Iterator[str]:
    """Yield lookup keys for one method, most specific first."""
    yield f"{method}:{path}"
    parts = [part for part in path.split("/") if part]
    for index in range(len(parts), 0, -1):
        yield f"{method}:/{'/'.join(parts[:index])}/*"


class RouteAuthResolver:
    """Resolve the authentication requirement for a method + path."""

    def __init__(self, overrides: Mapping[str, bool] | None = None) -> None:
        normalized = {
            _normalize_key(key): bool(value) for key, value in (overrides or {}).items()
        }
        self._overrides: Mapping[str, bool] = MappingProxyType(normalized)

    @property
    def overrides(self) -> Mapping[str, bool]:
        return self._overrides

    def __len__(self) -> int:
        return len(self._overrides)

    def resolve(self, method: str, path: str) -> AuthDecision:
        """Return the decision of the first matching override.

        Exact ``METHOD:PATH`` wins over ``METHOD`` wildcards (longest prefix
        first), and the concrete method always wins over ``ALL``.
        """
        if not self._overrides:
            return AuthDecision.DEFAULT

        for candidate_method in (method.upper(), WILDCARD_METHOD):
            for key in _candidate_keys(candidate_method, path):
                required = self._overrides.get(key)
                if required is None:
                    continue
                return AuthDecision.REQUIRED if required else AuthDecision.NOT_REQUIRED
        return AuthDecision.DEFAULT
