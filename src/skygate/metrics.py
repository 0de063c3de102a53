"""In-process metrics exposed at ``/metrics`` in Prometheus text format.

Metrics collected:
    - skygate_forwarded_requests_total: forwarded calls by route and outcome
    - skygate_policy_denials_total: origin denials by reason
    - skygate_tls_redirects_total: plaintext requests redirected to HTTPS
    - skygate_upstream_duration_seconds: upstream call latency by route
    - skygate_cache_lookups_total: response/session cache hits and misses
    - skygate_health_status: dependency health (1=healthy, 0=unhealthy)
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

LabelValues = tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _labels(names: tuple[str, ...], values: LabelValues, extra: str = "") -> str:
    pairs = [f'{name}="{_escape(value)}"' for name, value in zip(names, values, strict=False)]
    if extra:
        pairs.append(extra)
    return "{" + ",".join(pairs) + "}" if pairs else ""


@dataclass
class _Series:
    """Shared state for a metric family keyed by label values."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[LabelValues, float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    kind = "untyped"

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def _add(self, label_values: LabelValues, amount: float) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def collect(self) -> str:
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} {self.kind}",
        ]
        with self._lock:
            if not self._values and not self.labels:
                lines.append(f"{self.name} 0")
            for label_values, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_labels(self.labels, label_values)} {value}")
        return "\n".join(lines)


@dataclass
class Counter(_Series):
    """Monotonic counter."""

    kind = "counter"

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(label_values, amount)


@dataclass
class Gauge(_Series):
    """Value that can go up and down."""

    kind = "gauge"

    def set(self, value: float, *label_values: str) -> None:
        with self._lock:
            self._values[label_values] = value


@dataclass
class Histogram:
    """Latency histogram with fixed buckets."""

    name: str
    description: str
    buckets: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
    labels: tuple[str, ...] = ()
    _observations: dict[LabelValues, list[int]] = field(default_factory=dict)
    _sums: dict[LabelValues, float] = field(default_factory=dict)
    _counts: dict[LabelValues, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def observe(self, value: float, *label_values: str) -> None:
        with self._lock:
            per_bucket = self._observations.setdefault(label_values, [0] * len(self.buckets))
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    per_bucket[index] += 1
                    break
            self._sums[label_values] = self._sums.get(label_values, 0.0) + value
            self._counts[label_values] = self._counts.get(label_values, 0) + 1

    def count(self, *label_values: str) -> int:
        with self._lock:
            return self._counts.get(label_values, 0)

    @contextmanager
    def time(self, *label_values: str) -> Generator[None, None, None]:
        """Observe the wall time of the enclosed block, even if it raises."""
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
            for label_values in sorted(self._observations):
                cumulative = 0
                for bound, hits in zip(self.buckets, self._observations[label_values], strict=True):
                    cumulative += hits
                    bucket_labels = _labels(self.labels, label_values, f'le="{bound}"')
                    lines.append(f"{self.name}_bucket{bucket_labels} {cumulative}")
                total = self._counts[label_values]
                inf_labels = _labels(self.labels, label_values, 'le="+Inf"')
                lines.append(f"{self.name}_bucket{inf_labels} {total}")
                plain = _labels(self.labels, label_values)
                lines.append(f"{self.name}_sum{plain} {self._sums[label_values]}")
                lines.append(f"{self.name}_count{plain} {total}")
        return "\n".join(lines)


class MetricsRegistry:
    """All gateway metrics."""

    def __init__(self) -> None:
        self.forwarded_requests_total = Counter(
            name="skygate_forwarded_requests_total",
            description="Requests forwarded upstream by route and outcome",
            labels=("route", "outcome"),
        )
        self.policy_denials_total = Counter(
            name="skygate_policy_denials_total",
            description="Requests rejected by the origin policy",
            labels=("reason",),
        )
        self.tls_redirects_total = Counter(
            name="skygate_tls_redirects_total",
            description="Plaintext requests redirected to HTTPS",
        )
        self.upstream_duration_seconds = Histogram(
            name="skygate_upstream_duration_seconds",
            description="Upstream call duration in seconds",
            labels=("route",),
        )
        self.cache_lookups_total = Counter(
            name="skygate_cache_lookups_total",
            description="Cache lookups by cache and result",
            labels=("cache", "result"),
        )
        self.health_status = Gauge(
            name="skygate_health_status",
            description="Health status of dependencies (1=healthy, 0=unhealthy)",
            labels=("dependency",),
        )

    def _families(self) -> list[_Series | Histogram]:
        return [
            self.forwarded_requests_total,
            self.policy_denials_total,
            self.tls_redirects_total,
            self.upstream_duration_seconds,
            self.cache_lookups_total,
            self.health_status,
        ]

    def collect_all(self) -> str:
        return "\n\n".join(family.collect() for family in self._families()) + "\n"


metrics = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Return the process-wide metrics registry."""
    return metrics


def reset_metrics() -> MetricsRegistry:
    """Replace the process-wide registry (used by tests)."""
    global metrics
    metrics = MetricsRegistry()
    return metrics
