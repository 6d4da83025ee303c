"""Route dispatch pipeline.

This module implements the RouteDispatcher, which runs every registered
route through the same stages, strictly in order:

1. Deriving the request-scoped context
2. Enforcing authentication and authorization
3. Extracting and validating path, query and body parameters
4. Invoking the route handler with the merged input
5. Sending the result through the response multiplexer

Auth and validation failures are answered locally and never reach the
handler. Anything the handler (or the multiplexer) raises is normalized
once at this boundary.
"""

from __future__ import annotations

import inspect
from typing import Any, cast

from starlette.responses import Response

from routegate.auth import AuthEnforcer
from routegate.context import ContextDeriver
from routegate.errors import UNAUTHORIZED, normalize_error, render_error, validation_error
from routegate.logging import get_logger
from routegate.metrics import get_metrics
from routegate.models import Route
from routegate.params import ExtractedParams, ParameterPipeline
from routegate.responses import ResponseMultiplexer
from routegate.transport import InboundRequest

logger = get_logger(__name__)


async def invoke_handler(route: Route, handler_input: dict[str, Any]) -> Any:
    result = route.handler(handler_input)
    if inspect.isawaitable(result):
        result = await result
    return result


class RouteDispatcher:
    """Run a route's request through context, auth, params, handler and response."""

    def __init__(
        self,
        deriver: ContextDeriver,
        enforcer: AuthEnforcer,
        pipeline: ParameterPipeline,
        multiplexer: ResponseMultiplexer,
    ) -> None:
        self.deriver = deriver
        self.enforcer = enforcer
        self.pipeline = pipeline
        self.multiplexer = multiplexer

    async def dispatch(
        self,
        route: Route,
        inbound: InboundRequest,
        *,
        route_label: str | None = None,
    ) -> Response:
        label = route_label or f"{route.method} {route.path}"
        response = await self._run(route, inbound, label)
        get_metrics().requests_total.inc(label, str(response.status_code))
        return response

    async def _run(self, route: Route, inbound: InboundRequest, label: str) -> Response:
        metrics = get_metrics()
        context = self.deriver.derive(inbound)

        outcome = await self.enforcer.enforce(inbound, context)
        if not outcome.allowed:
            denial = outcome.error or UNAUTHORIZED
            logger.info("auth_denied", route=label, status=denial.status)
            return render_error(denial)

        try:
            extracted = self.pipeline.extract(route, inbound)
            validation = self.pipeline.validate(route, extracted)
            failure = validation.failure
            if failure is not None:
                metrics.validation_failures_total.inc(label)
                logger.info("validation_failed", route=label, source=failure.source)
                return render_error(validation_error(failure.message, failure.issues))

            self.pipeline.merge_body_context(extracted, context)
            handler_input = self.pipeline.build_handler_input(
                cast(ExtractedParams, validation.value), context
            )

            with metrics.handler_duration_seconds.time(label):
                result = await invoke_handler(route, handler_input)
            return await self.multiplexer.send(route, result, context)
        except Exception as exc:
            error = normalize_error(exc)
            if error.status >= 500:
                logger.exception("route_error", route=label, status=error.status)
            else:
                logger.warning(
                    "route_error", route=label, status=error.status, error=str(exc)
                )
            return render_error(error)
