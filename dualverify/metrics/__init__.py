"""Metrics, health checks and Prometheus export."""

from .prometheus import PrometheusExporter
from .service import (
    HealthState,
    HealthStatus,
    MetricsService,
    MetricsSnapshot,
    Outcome,
    ProviderHealth,
    percentile,
)

__all__ = [
    "MetricsService",
    "MetricsSnapshot",
    "HealthStatus",
    "HealthState",
    "Outcome",
    "ProviderHealth",
    "PrometheusExporter",
    "percentile",
]
