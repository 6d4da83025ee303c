"""RouteGate CLI entrypoint.

Usage:
    python -m routegate --app myapp.server:app           # Serve an app with uvicorn
    python -m routegate --app myapp.server:build --factory
    python -m routegate --routes myapp.registry:routes   # Print the route table
    python -m routegate --version                        # Print version
    python -m routegate --help                           # Show help
"""

from __future__ import annotations

import argparse
import importlib
import json
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from routegate.models import Route
from routegate.route_auth import RouteAuthResolver
from routegate.server import normalize_prefix, to_router_path


def _load_json_payload(value: str) -> dict[str, Any]:
    path = Path(value)
    payload = (
        json.loads(path.read_text(encoding="utf-8"))
        if path.exists()
        else json.loads(value)
    )
    if not isinstance(payload, dict):
        raise ValueError("Expected JSON object for payload.")
    return payload


def load_target(target: str) -> Any:
    """Import ``module:attribute`` and return the attribute."""
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected module:attribute, got {target!r}")
    module = importlib.import_module(module_name)
    value: Any = module
    for part in attribute.split("."):
        value = getattr(value, part)
    return value


def load_routes(target: str) -> list[Route]:
    value = load_target(target)
    if callable(value) and not isinstance(value, Iterable):
        value = value()
    routes = list(value)
    for route in routes:
        if not isinstance(route, Route):
            raise TypeError(f"{target} yielded a non-Route value: {route!r}")
    return routes


def render_route_table(
    routes: Iterable[Route],
    *,
    prefix: str = "",
    route_auth: dict[str, bool] | None = None,
    console: Console | None = None,
) -> Table:
    """Print method, full path, response type and auth decision for each route."""
    resolver = RouteAuthResolver(route_auth)
    normalized_prefix = normalize_prefix(prefix)
    table = Table(title="RouteGate routes", box=box.ASCII)
    table.add_column("Method")
    table.add_column("Path")
    table.add_column("Response")
    table.add_column("Auth")
    for route in routes:
        full_path = f"{normalized_prefix}{to_router_path(route.path)}"
        response = route.response_type.value
        if route.stream_format is not None:
            response = f"{response} ({route.stream_format.value})"
        table.add_row(
            route.method,
            full_path,
            response,
            resolver.resolve(route.method, full_path).value,
        )
    (console or Console(width=120)).print(table)
    return table


def main() -> None:
    """CLI entrypoint."""
    from routegate import __version__

    parser = argparse.ArgumentParser(
        prog="routegate",
        description="RouteGate: mount agent runtime routes on FastAPI",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"RouteGate {__version__}"
    )
    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument("--app", help="ASGI app to serve, as module:attribute")
    mode_group.add_argument(
        "--routes", help="Route table to print, as module:attribute"
    )
    parser.add_argument(
        "--factory",
        action="store_true",
        help="Treat --app as a factory returning the app",
    )
    parser.add_argument(
        "--prefix", default="", help="Route prefix used by --routes (default: none)"
    )
    parser.add_argument(
        "--route-auth",
        default=None,
        help="Route auth overrides for --routes, as JSON or a path to a JSON file",
    )
    parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.routes:
        try:
            routes = load_routes(args.routes)
            route_auth = _load_json_payload(args.route_auth) if args.route_auth else None
            render_route_table(routes, prefix=args.prefix, route_auth=route_auth)
        except (ImportError, AttributeError, TypeError, ValueError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(1)
        sys.exit(0)

    import uvicorn

    uvicorn.run(
        args.app,
        host=args.host,
        port=args.port,
        reload=args.reload,
        factory=args.factory,
    )


if __name__ == "__main__":
    main()
