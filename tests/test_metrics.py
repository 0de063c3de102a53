"""Metrics registry tests."""

from __future__ import annotations

import pytest

from skygate.metrics import Counter, Gauge, Histogram, MetricsRegistry, get_metrics, reset_metrics


def test_counter_tracks_label_sets() -> None:
    counter = Counter(name="test_total", description="Test", labels=("route", "outcome"))
    counter.inc("webhook", "ok")
    counter.inc("webhook", "ok", amount=2)
    counter.inc("panel", "timeout")
    assert counter.get("webhook", "ok") == 3
    assert counter.get("panel", "timeout") == 1
    assert counter.get("panel", "ok") == 0


def test_counter_rejects_negative_increment() -> None:
    counter = Counter(name="test_total", description="Test")
    with pytest.raises(ValueError):
        counter.inc(amount=-1)


def test_unlabelled_counter_collects_zero() -> None:
    counter = Counter(name="redirects_total", description="Redirects")
    assert "redirects_total 0" in counter.collect()


def test_label_values_are_escaped() -> None:
    counter = Counter(name="denials_total", description="Denials", labels=("reason",))
    counter.inc('bad"value')
    assert 'denials_total{reason="bad\\"value"} 1.0' in counter.collect()


def test_gauge_set_overwrites() -> None:
    gauge = Gauge(name="health", description="Health", labels=("dependency",))
    gauge.set(1.0, "n8n")
    gauge.set(0.0, "n8n")
    assert gauge.get("n8n") == 0.0
    assert "# TYPE health gauge" in gauge.collect()


def test_histogram_buckets_are_cumulative() -> None:
    histogram = Histogram(
        name="latency_seconds", description="Latency", buckets=(0.1, 1.0), labels=("route",)
    )
    histogram.observe(0.05, "webhook")
    histogram.observe(0.5, "webhook")
    histogram.observe(5.0, "webhook")
    output = histogram.collect()
    assert 'latency_seconds_bucket{route="webhook",le="0.1"} 1' in output
    assert 'latency_seconds_bucket{route="webhook",le="1.0"} 2' in output
    assert 'latency_seconds_bucket{route="webhook",le="+Inf"} 3' in output
    assert 'latency_seconds_count{route="webhook"} 3' in output
    assert histogram.count("webhook") == 3


def test_histogram_time_observes_on_error() -> None:
    histogram = Histogram(name="latency_seconds", description="Latency", labels=("route",))
    with pytest.raises(RuntimeError):
        with histogram.time("panel"):
            raise RuntimeError("boom")
    assert histogram.count("panel") == 1


def test_registry_collects_every_family() -> None:
    registry = MetricsRegistry()
    registry.forwarded_requests_total.inc("webhook", "ok")
    output = registry.collect_all()
    for name in (
        "skygate_forwarded_requests_total",
        "skygate_policy_denials_total",
        "skygate_tls_redirects_total",
        "skygate_upstream_duration_seconds",
        "skygate_cache_lookups_total",
        "skygate_health_status",
    ):
        assert f"# TYPE {name}" in output
    assert output.endswith("\n")


def test_reset_metrics_replaces_registry() -> None:
    get_metrics().tls_redirects_total.inc()
    fresh = reset_metrics()
    assert get_metrics() is fresh
    assert fresh.tls_redirects_total.get() == 0
