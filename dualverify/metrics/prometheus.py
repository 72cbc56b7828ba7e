"""Prometheus text exposition for verification metrics."""

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Latency buckets in seconds; provider round-trips dominate
LATENCY_BUCKETS = (0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 45.0, 60.0, 120.0)


class PrometheusExporter:
    """Counters and histograms fed per event; gauges refreshed on export.

    Each exporter owns a private registry so several services (or tests)
    can coexist in one process.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, namespace: str = "dualverify", registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.requests = Counter(
            "requests_total",
            "Verify calls by outcome",
            ["outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self.errors = Counter(
            "errors_total",
            "Verify calls that ended in an error, by kind",
            ["kind"],
            namespace=namespace,
            registry=self.registry,
        )
        self.latency = Histogram(
            "request_latency_seconds",
            "End-to-end Verify latency",
            buckets=LATENCY_BUCKETS,
            namespace=namespace,
            registry=self.registry,
        )
        self.latency_quantile = Gauge(
            "request_latency_window_ms",
            "Rolling-window latency percentiles in milliseconds",
            ["quantile"],
            namespace=namespace,
            registry=self.registry,
        )
        self.success_rate = Gauge(
            "success_rate",
            "Share of Verify calls returning a verified response",
            namespace=namespace,
            registry=self.registry,
        )
        self.error_rate = Gauge(
            "window_error_rate",
            "Rolling-window error rate used by the health check",
            namespace=namespace,
            registry=self.registry,
        )
        self.blocked_sources = Gauge(
            "blocked_sources",
            "Source keys currently blocked by the security monitor",
            namespace=namespace,
            registry=self.registry,
        )
        self.provider_up = Gauge(
            "provider_up",
            "Provider reachability (1=reachable)",
            ["provider"],
            namespace=namespace,
            registry=self.registry,
        )
        self.health = Gauge(
            "health_status",
            "Overall health (2=healthy, 1=degraded, 0=unhealthy)",
            namespace=namespace,
            registry=self.registry,
        )
        self.cost = Gauge(
            "provider_cost_usd",
            "Accumulated provider cost in USD",
            ["provider"],
            namespace=namespace,
            registry=self.registry,
        )

    def observe(self, outcome: str, latency_ms: float, error_kind: str | None) -> None:
        self.requests.labels(outcome=outcome).inc()
        if error_kind:
            self.errors.labels(kind=error_kind).inc()
        self.latency.observe(max(0.0, latency_ms) / 1000.0)

    def refresh(self, snapshot: dict, health: dict) -> None:
        """Copy point-in-time values into the gauges."""
        latency = snapshot.get("latency_ms", {})
        for quantile in ("p50", "p95", "p99"):
            self.latency_quantile.labels(quantile=quantile).set(latency.get(quantile) or 0.0)
        self.success_rate.set(snapshot.get("success_rate") or 0.0)
        self.error_rate.set(health.get("error_rate") or 0.0)
        self.blocked_sources.set(snapshot.get("current_block_count", 0))
        for name, provider in health.get("providers", {}).items():
            self.provider_up.labels(provider=name).set(1 if provider.get("reachable") else 0)
        self.health.set({"healthy": 2, "degraded": 1}.get(health.get("status"), 0))
        for name, usage in snapshot.get("costs", {}).get("providers", {}).items():
            self.cost.labels(provider=name).set(usage.get("cost_usd", 0.0))

    def render(self) -> bytes:
        return generate_latest(self.registry)
