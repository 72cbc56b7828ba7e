"""Rolling metrics and health policy for the verification service."""

import asyncio
import math
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..config import MetricsConfig
from ..logging_config import get_logger
from .prometheus import PrometheusExporter

logger = get_logger(__name__)

# Errors caused by the caller, not by the system; excluded from health
CALLER_ERROR_KINDS = frozenset({"rate_limited", "validation", "safety_violation"})


class Outcome(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"  # usable response returned with verified=False
    ERROR = "error"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def percentile(sorted_values: list[float], pct: float) -> float | None:
    """Nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        return None
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


@dataclass(frozen=True)
class MetricEvent:
    timestamp: float
    outcome: Outcome
    latency_ms: float
    error_kind: str | None = None


@dataclass
class ProviderHealth:
    """Reachability of one provider, fed by live calls and probes."""

    name: str
    reachable: bool = True
    consecutive_failures: int = 0
    last_error: str | None = None
    last_checked: float | None = None

    def to_dict(self) -> dict:
        return {
            "reachable": self.reachable,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_checked": (
                datetime.fromtimestamp(self.last_checked, tz=timezone.utc).isoformat()
                if self.last_checked else None
            ),
        }


@dataclass(frozen=True)
class HealthStatus:
    status: HealthState
    error_rate: float
    p95_latency_ms: float | None
    window_events: int
    providers: dict[str, ProviderHealth] = field(default_factory=dict)
    reasons: tuple[str, ...] = ()
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthState.HEALTHY

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "error_rate": round(self.error_rate, 4),
            "p95_latency_ms": self.p95_latency_ms,
            "window_events": self.window_events,
            "providers": {name: p.to_dict() for name, p in self.providers.items()},
            "reasons": list(self.reasons),
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    total_requests: int
    outcomes: dict[str, int]
    success_rate: float
    errors_by_kind: dict[str, int]
    latency_p50_ms: float | None
    latency_p95_ms: float | None
    latency_p99_ms: float | None
    window_seconds: float
    window_events: int
    current_block_count: int
    costs: dict = field(default_factory=dict)
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "outcomes": dict(self.outcomes),
            "success_rate": round(self.success_rate, 4),
            "errors_by_kind": dict(self.errors_by_kind),
            "latency_ms": {
                "p50": self.latency_p50_ms,
                "p95": self.latency_p95_ms,
                "p99": self.latency_p99_ms,
            },
            "window_seconds": self.window_seconds,
            "window_events": self.window_events,
            "current_block_count": self.current_block_count,
            "costs": self.costs,
            "uptime_seconds": round(self.uptime_seconds, 1),
        }


class MetricsService:
    """Aggregates per-call events into a snapshot and a health verdict.

    Latency percentiles and the health error rate are computed over a
    rolling window; outcome and error counters are cumulative.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        block_count: Callable[[], int] | None = None,
        cost_summary: Callable[[], dict] | None = None,
        clock: Callable[[], float] = time.time,
        exporter: PrometheusExporter | None = None,
    ):
        self.config = config or MetricsConfig()
        self._block_count = block_count or (lambda: 0)
        self._cost_summary = cost_summary or (lambda: {})
        self._clock = clock
        self.exporter = exporter or PrometheusExporter()

        self._events: deque[MetricEvent] = deque(maxlen=self.config.max_samples)
        self._outcomes: Counter = Counter()
        self._errors: Counter = Counter()
        self._providers: dict[str, ProviderHealth] = {}
        self._started = clock()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_event(
        self,
        outcome: Outcome | str,
        latency_ms: float,
        error_kind: str | None = None,
    ) -> None:
        """Record one Verify call."""
        outcome = Outcome(outcome)
        async with self._lock:
            self._events.append(MetricEvent(self._clock(), outcome, latency_ms, error_kind))
            self._outcomes[outcome.value] += 1
            if error_kind:
                self._errors[error_kind] += 1
            self.exporter.observe(outcome.value, latency_ms, error_kind)

    def register_provider(self, name: str) -> None:
        self._providers.setdefault(name, ProviderHealth(name))

    def record_provider_call(self, name: str, ok: bool, error: str | None = None) -> None:
        """Passive reachability from live calls."""
        provider = self._providers.setdefault(name, ProviderHealth(name))
        provider.last_checked = self._clock()
        if ok:
            provider.consecutive_failures = 0
            provider.reachable = True
            provider.last_error = None
            return
        provider.consecutive_failures += 1
        provider.last_error = error
        if provider.consecutive_failures >= self.config.unreachable_after_failures:
            if provider.reachable:
                logger.warning(
                    "Provider %s marked unreachable after %d consecutive failures",
                    name,
                    provider.consecutive_failures,
                )
            provider.reachable = False

    def set_provider_reachability(self, name: str, reachable: bool, error: str | None = None) -> None:
        """Active reachability from a probe."""
        provider = self._providers.setdefault(name, ProviderHealth(name))
        provider.reachable = reachable
        provider.last_checked = self._clock()
        provider.last_error = error
        provider.consecutive_failures = 0 if reachable else max(1, provider.consecutive_failures)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _window(self) -> list[MetricEvent]:
        cutoff = self._clock() - self.config.window_seconds
        return [e for e in self._events if e.timestamp >= cutoff]

    def get_snapshot(self) -> MetricsSnapshot:
        window = self._window()
        latencies = sorted(e.latency_ms for e in window)
        total = sum(self._outcomes.values())
        verified = self._outcomes.get(Outcome.VERIFIED.value, 0)
        return MetricsSnapshot(
            total_requests=total,
            outcomes=dict(self._outcomes),
            success_rate=verified / total if total else 0.0,
            errors_by_kind=dict(self._errors),
            latency_p50_ms=percentile(latencies, 50),
            latency_p95_ms=percentile(latencies, 95),
            latency_p99_ms=percentile(latencies, 99),
            window_seconds=self.config.window_seconds,
            window_events=len(window),
            current_block_count=self._block_count(),
            costs=self._cost_summary(),
            uptime_seconds=self._clock() - self._started,
        )

    def health_check(self) -> HealthStatus:
        """healthy / degraded / unhealthy from the rolling window and providers."""
        window = [e for e in self._window() if e.error_kind not in CALLER_ERROR_KINDS]
        errors = sum(1 for e in window if e.outcome == Outcome.ERROR)
        error_rate = errors / len(window) if window else 0.0
        p95 = percentile(sorted(e.latency_ms for e in window), 95)

        unreachable = [p.name for p in self._providers.values() if not p.reachable]
        reasons = []
        if error_rate > self.config.unhealthy_error_rate:
            reasons.append(f"error rate {error_rate:.1%} above {self.config.unhealthy_error_rate:.0%}")
        if unreachable:
            reasons.append(f"provider unreachable: {', '.join(sorted(unreachable))}")

        if reasons:
            status = HealthState.UNHEALTHY
        else:
            if error_rate > self.config.degraded_error_rate:
                reasons.append(f"error rate {error_rate:.1%} above {self.config.degraded_error_rate:.0%}")
            if p95 is not None and p95 > self.config.p95_sla_ms:
                reasons.append(f"p95 latency {p95:.0f}ms above SLA {self.config.p95_sla_ms:.0f}ms")
            status = HealthState.DEGRADED if reasons else HealthState.HEALTHY

        return HealthStatus(
            status=status,
            error_rate=error_rate,
            p95_latency_ms=p95,
            window_events=len(window),
            providers={name: ProviderHealth(**vars(p)) for name, p in self._providers.items()},
            reasons=tuple(reasons),
        )

    def export_prometheus(self) -> bytes:
        """Prometheus text exposition of counters, gauges and the latency histogram."""
        self.exporter.refresh(self.get_snapshot().to_dict(), self.health_check().to_dict())
        return self.exporter.render()
