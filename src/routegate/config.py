"""Environment-driven defaults for RouteGate servers.

Explicit ``ServerOptions`` values always take precedence over these.
"""

from __future__ import annotations

import os

_FALSY = {"0", "false", "no", "off"}


def get_log_level() -> str:
    return os.getenv("ROUTEGATE_LOG_LEVEL", "INFO")


def get_log_json() -> bool:
    value = os.getenv("ROUTEGATE_LOG_JSON", "").strip().lower()
    return value not in _FALSY


def get_prefix() -> str:
    return os.getenv("ROUTEGATE_PREFIX", "")


def is_stream_redaction_enabled() -> bool:
    """Return whether stream chunks are redacted (on unless explicitly disabled)."""
    value = os.getenv("ROUTEGATE_STREAM_REDACT", "").strip().lower()
    if value in _FALSY:
        return False
    return True


def get_max_body_bytes() -> int | None:
    """Return the request body limit in bytes, or None when unlimited."""
    raw = os.getenv("ROUTEGATE_MAX_BODY_BYTES", "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def get_disconnect_poll_interval() -> float:
    raw = os.getenv("ROUTEGATE_DISCONNECT_POLL_SECONDS", "0.25")
    try:
        value = float(raw)
    except ValueError:
        return 0.25
    return value if value > 0 else 0.25
