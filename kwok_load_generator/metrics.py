"""Prometheus metric registrations for the load generator."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

LATENCY_BUCKETS = (
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)


class MetricSet:
    """Wrapper object holding Prometheus metric instances."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        reg = registry
        self.nodes_total = Gauge(
            "kwok_load_generator_nodes_total",
            "Current number of KWOK nodes being monitored.",
            labelnames=("config",),
            registry=reg,
        )
        self.namespaces_total = Gauge(
            "kwok_load_generator_namespaces_total",
            "Current number of generated namespaces.",
            labelnames=("config",),
            registry=reg,
        )
        self.api_calls_duration_seconds = Histogram(
            "kwok_load_generator_api_calls_duration_seconds",
            "Time taken for API calls issued by the load generator.",
            labelnames=("config", "verb"),
            buckets=LATENCY_BUCKETS,
            registry=reg,
        )
        self.reconcile_duration_seconds = Histogram(
            "kwok_load_generator_reconcile_duration_seconds",
            "Time taken for reconcile loops.",
            labelnames=("config",),
            buckets=LATENCY_BUCKETS + (30.0, 60.0),
            registry=reg,
        )
        self.errors_total = Counter(
            "kwok_load_generator_errors_total",
            "Failed reconcile ticks by error type.",
            labelnames=("config", "type"),
            registry=reg,
        )

    def observe_api_call(self, config_name: str, verb: str, seconds: float) -> None:
        self.api_calls_duration_seconds.labels(config=config_name, verb=verb).observe(seconds)

    def record_counts(self, config_name: str, nodes: int, namespaces: int) -> None:
        self.nodes_total.labels(config=config_name).set(nodes)
        self.namespaces_total.labels(config=config_name).set(namespaces)

    def forget(self, config_name: str) -> None:
        """Drop gauge series for a config that no longer exists."""

        for gauge in (self.nodes_total, self.namespaces_total):
            try:
                gauge.remove(config_name)
            except KeyError:
                pass


__all__ = ["LATENCY_BUCKETS", "MetricSet"]
