"""Error taxonomy and normalization at the pipeline boundary.

Pipeline stages raise (or return) typed failures; ``normalize_error`` maps
anything a handler throws onto an ``ErrorKind`` and a status code exactly
once, and ``render_error`` turns the result into a JSON response.

Status precedence for handler errors:
1. An explicit ``status`` (or ``status_code``) attribute
2. A nested ``details.status``
3. Validation-shaped errors (pydantic ``ValidationError`` or a message
   mentioning "validation") map to 400
4. Everything else maps to 500

Validation-shaped client errors keep their own status but use the
``VALIDATION_ERROR`` body (a 422 stays 422). Bodies of 5xx errors are
always generic.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from fastapi.responses import JSONResponse
from pydantic import ValidationError

from routegate.models import ErrorBody

GENERIC_INTERNAL_MESSAGE = "An unexpected error occurred"


class ErrorKind(StrEnum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    CLIENT = "client"
    INTERNAL = "internal"
    STREAM = "stream"


class RouteError(Exception):
    """Error raised by handlers that want a specific HTTP status.

    Example:
        ```python
        raise RouteError("Agent not found", status=404)
        ```
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = dict(details) if details is not None else None


class StreamSourceError(RouteError):
    """A stream route's handler result exposes no chunk source."""


class RequestBodyError(RouteError):
    """The request body could not be decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=400)


@dataclass(frozen=True)
class NormalizedError:
    kind: ErrorKind
    status: int
    body: dict[str, Any]


UNAUTHORIZED = NormalizedError(
    kind=ErrorKind.UNAUTHORIZED,
    status=401,
    body=ErrorBody(error="Unauthorized").to_payload(),
)
FORBIDDEN = NormalizedError(
    kind=ErrorKind.FORBIDDEN,
    status=403,
    body=ErrorBody(error="Forbidden").to_payload(),
)


def validation_issues(exc: ValidationError) -> list[Any]:
    """Return pydantic's issue list as plain JSON values."""
    return json.loads(json.dumps(exc.errors(include_url=False), default=str))


def validation_error(
    message: str, details: list[Any] | None = None, *, status: int = 400
) -> NormalizedError:
    return NormalizedError(
        kind=ErrorKind.VALIDATION,
        status=status,
        body=ErrorBody(
            error="VALIDATION_ERROR",
            message=message or "Validation failed",
            details=details,
        ).to_payload(),
    )


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _explicit_status(exc: BaseException) -> int | None:
    status = _as_status(getattr(exc, "status", None))
    if status is None:
        status = _as_status(getattr(exc, "status_code", None))
    return status


def _details_status(exc: BaseException) -> int | None:
    details = getattr(exc, "details", None)
    if isinstance(details, Mapping):
        return _as_status(details.get("status"))
    return _as_status(getattr(details, "status", None))


def _message(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    detail = getattr(exc, "detail", None)
    if isinstance(detail, str) and detail:
        return detail
    return str(exc)


def _issue_list(exc: BaseException) -> list[Any] | None:
    if isinstance(exc, ValidationError):
        return validation_issues(exc)
    for name in ("issues", "errors"):
        value = getattr(exc, name, None)
        if isinstance(value, list):
            return value
    return None


def _looks_like_validation(exc: BaseException, message: str) -> bool:
    return isinstance(exc, ValidationError) or "validation" in message.lower()


def normalize_error(exc: BaseException) -> NormalizedError:
    """Map an arbitrary exception onto an error kind, status and body."""
    message = _message(exc)
    status = _explicit_status(exc)
    if status is None:
        status = _details_status(exc)
    if status is None:
        status = 400 if _looks_like_validation(exc, message) else 500
    if not 400 <= status <= 599:
        status = 500

    if status == 400 or (status < 500 and _looks_like_validation(exc, message)):
        return validation_error(message, _issue_list(exc), status=status)
    if status >= 500:
        kind = ErrorKind.STREAM if isinstance(exc, StreamSourceError) else ErrorKind.INTERNAL
        return NormalizedError(
            kind=kind,
            status=status,
            body=ErrorBody(error="INTERNAL_ERROR", message=GENERIC_INTERNAL_MESSAGE).to_payload(),
        )

    kind = ErrorKind.CLIENT
    if status == 401:
        kind = ErrorKind.UNAUTHORIZED
    elif status == 403:
        kind = ErrorKind.FORBIDDEN
    return NormalizedError(
        kind=kind,
        status=status,
        body=ErrorBody(error="ERROR", message=message or "An error occurred").to_payload(),
    )


def render_error(error: NormalizedError) -> JSONResponse:
    return JSONResponse(error.body, status_code=error.status)
