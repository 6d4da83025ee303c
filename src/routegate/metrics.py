"""Prometheus metrics for RouteGate dispatch.

Metrics are rendered in Prometheus text format by the optional metrics
endpoint (``ServerOptions.metrics_path``).

Metrics collected:
    - routegate_requests_total: Counter of dispatched requests by route and status
    - routegate_auth_denials_total: Counter of 401/403 outcomes by reason
    - routegate_validation_failures_total: Counter of 400 validation failures by route
    - routegate_stream_chunks_total: Counter of stream frames by format
    - routegate_active_streams: Gauge of streams currently being written
    - routegate_handler_duration_seconds: Histogram of handler latencies
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock


def _format_labels(names: tuple[str, ...], values: tuple[str, ...]) -> str:
    return ",".join(
        f'{name}="{value}"' for name, value in zip(names, values, strict=False)
    )


@dataclass
class Counter:
    """Thread-safe counter metric."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[tuple[str, ...], float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def collect(self) -> str:
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} counter",
        ]
        with self._lock:
            if not self._values:
                lines.append(f"{self.name} 0")
            for label_values, value in sorted(self._values.items()):
                if self.labels and label_values:
                    lines.append(
                        f"{self.name}{{{_format_labels(self.labels, label_values)}}} {value}"
                    )
                else:
                    lines.append(f"{self.name} {value}")
        return "\n".join(lines)


@dataclass
class Gauge:
    """Thread-safe gauge metric without labels."""

    name: str
    description: str
    _value: float = 0.0
    _lock: Lock = field(default_factory=Lock)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    def get(self) -> float:
        with self._lock:
            return self._value

    def collect(self) -> str:
        return "\n".join([
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} gauge",
            f"{self.name} {self.get()}",
        ])


@dataclass
class Histogram:
    """Thread-safe histogram metric with configurable buckets."""

    name: str
    description: str
    buckets: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
    labels: tuple[str, ...] = ()
    _bucket_counts: dict[tuple[str, ...], dict[float, int]] = field(default_factory=dict)
    _sums: dict[tuple[str, ...], float] = field(default_factory=dict)
    _counts: dict[tuple[str, ...], int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def observe(self, value: float, *label_values: str) -> None:
        with self._lock:
            counts = self._bucket_counts.setdefault(
                label_values, dict.fromkeys(self.buckets, 0)
            )
            for bucket in self.buckets:
                if value <= bucket:
                    counts[bucket] += 1
            self._sums[label_values] = self._sums.get(label_values, 0.0) + value
            self._counts[label_values] = self._counts.get(label_values, 0) + 1

    def count(self, *label_values: str) -> int:
        with self._lock:
            return self._counts.get(label_values, 0)

    @contextmanager
    def time(self, *label_values: str) -> Generator[None, None, None]:
        """Context manager to time a block of code."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, *label_values)

    def collect(self) -> str:
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} histogram",
        ]
        with self._lock:
            for label_values in sorted(self._bucket_counts):
                label_prefix = ""
                if self.labels and label_values:
                    label_prefix = _format_labels(self.labels, label_values) + ","
                cumulative = 0
                for bucket in sorted(self.buckets):
                    cumulative = self._bucket_counts[label_values].get(bucket, 0)
                    lines.append(
                        f'{self.name}_bucket{{{label_prefix}le="{bucket}"}} {cumulative}'
                    )
                count = self._counts.get(label_values, 0)
                lines.append(f'{self.name}_bucket{{{label_prefix}le="+Inf"}} {count}')
                labels = label_prefix[:-1] if label_prefix else ""
                lines.append(f"{self.name}_sum{{{labels}}} {self._sums.get(label_values, 0.0)}")
                lines.append(f"{self.name}_count{{{labels}}} {count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Registry for all RouteGate metrics."""

    def __init__(self) -> None:
        self.requests_total = Counter(
            name="routegate_requests_total",
            description="Total number of dispatched route requests",
            labels=("route", "status"),
        )
        self.auth_denials_total = Counter(
            name="routegate_auth_denials_total",
            description="Total number of requests rejected by the auth gate",
            labels=("reason",),  # unauthorized, forbidden
        )
        self.validation_failures_total = Counter(
            name="routegate_validation_failures_total",
            description="Total number of parameter validation failures",
            labels=("route",),
        )
        self.stream_chunks_total = Counter(
            name="routegate_stream_chunks_total",
            description="Total number of stream frames written",
            labels=("format",),  # sse, ndjson
        )
        self.active_streams = Gauge(
            name="routegate_active_streams",
            description="Number of streaming responses in progress",
        )
        self.handler_duration_seconds = Histogram(
            name="routegate_handler_duration_seconds",
            description="Route handler duration in seconds",
            labels=("route",),
        )

    def collect_all(self) -> str:
        """Collect all metrics in Prometheus format."""
        metrics = [
            self.requests_total.collect(),
            self.auth_denials_total.collect(),
            self.validation_failures_total.collect(),
            self.stream_chunks_total.collect(),
            self.active_streams.collect(),
            self.handler_duration_seconds.collect(),
        ]
        return "\n\n".join(metrics) + "\n"


# Global metrics registry
metrics = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Return the global metrics registry."""
    return metrics


def reset_metrics() -> MetricsRegistry:
    """Replace the global registry (used between test cases)."""
    global metrics
    metrics = MetricsRegistry()
    return metrics
