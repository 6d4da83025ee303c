"""Parameter extraction, validation and handler-input assembly."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from routegate.context import RequestScopedContext
from routegate.errors import RequestBodyError, validation_issues
from routegate.models import Route
from routegate.transport import InboundRequest

BODY_CONTEXT_KEY = "requestContext"


@dataclass(frozen=True)
class ExtractedParams:
    path_params: dict[str, Any] = field(default_factory=dict)
    query_params: dict[str, Any] = field(default_factory=dict)
    body: Any = None


@dataclass(frozen=True)
class ValidationFailure:
    """Structured schema rejection for one parameter source."""

    source: str
    message: str
    issues: list[Any] | None = None
    kind: str = "VALIDATION_ERROR"


@dataclass(frozen=True)
class ValidationOutcome:
    value: ExtractedParams | None = None
    failure: ValidationFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@lru_cache(maxsize=256)
def _adapter(schema: Any) -> TypeAdapter[Any]:
    return TypeAdapter(schema)


def apply_schema(schema: Any, value: Any) -> Any:
    """Validate ``value`` against a pydantic model or any TypeAdapter-compatible type.

    Model schemas return a plain dict so the result can be merged into the
    handler input.
    """
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_validate(value).model_dump()
    return _adapter(schema).validate_python(value)


_SOURCE_MESSAGES = {
    "path": "Invalid path parameters",
    "query": "Invalid query parameters",
    "body": "Invalid request body",
}


class ParameterPipeline:
    """Extract path/query/body from an inbound request and validate them."""

    def extract(self, route: Route, inbound: InboundRequest) -> ExtractedParams:
        if inbound.body_error:
            raise RequestBodyError(inbound.body_error)
        path_params = {
            key: value
            for key, value in inbound.path_params.items()
            if isinstance(value, str)
        }
        query_params = {
            key: value
            for key, value in inbound.query_params.items()
            if value is not None
        }
        return ExtractedParams(
            path_params=path_params,
            query_params=query_params,
            body=inbound.body,
        )

    def validate(self, route: Route, extracted: ExtractedParams) -> ValidationOutcome:
        """Apply the route's path, query and body schemas; the first failure wins."""
        values: dict[str, Any] = {
            "path": extracted.path_params,
            "query": extracted.query_params,
            "body": extracted.body,
        }
        schemas = {
            "path": route.path_schema,
            "query": route.query_schema,
            "body": route.body_schema,
        }
        for source, schema in schemas.items():
            if schema is None:
                continue
            try:
                values[source] = apply_schema(schema, values[source])
            except ValidationError as exc:
                return ValidationOutcome(
                    failure=ValidationFailure(
                        source=source,
                        message=_SOURCE_MESSAGES[source],
                        issues=validation_issues(exc),
                    )
                )
        return ValidationOutcome(
            value=ExtractedParams(
                path_params=dict(values["path"]),
                query_params=dict(values["query"]),
                body=values["body"],
            )
        )

    def merge_body_context(
        self, extracted: ExtractedParams, context: RequestScopedContext
    ) -> None:
        """Fold a body-level ``requestContext`` object into the request context.

        Body entries override query-sourced entries on key collision.
        """
        body = extracted.body
        if not isinstance(body, Mapping):
            return
        body_context = body.get(BODY_CONTEXT_KEY)
        if isinstance(body_context, Mapping):
            context.request_context.update(body_context)

    def build_handler_input(
        self, validated: ExtractedParams, context: RequestScopedContext
    ) -> dict[str, Any]:
        """Shallow-merge path, query and body; context fields win on collision."""
        handler_input: dict[str, Any] = {}
        handler_input.update(validated.path_params)
        handler_input.update(validated.query_params)
        if isinstance(validated.body, Mapping):
            handler_input.update(validated.body)
        handler_input.update(
            runtime=context.runtime,
            request_context=context.request_context,
            tools=context.tools,
            abort_signal=context.cancel_signal,
            task_store=context.task_store,
            principal=context.principal,
        )
        return handler_input
