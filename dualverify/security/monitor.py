"""Security monitor: rate limiting, blocking, threat and PII detection.

All rate-limit and block state lives here and is only touched under the
monitor's lock. Other components call ``check_and_record`` and
``sanitize_for_log``; none of them read the maps directly.
"""

import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..config import RateLimitConfig
from ..logging_config import get_logger
from ..models.verification import Severity
from .pii import PIIDetector, get_pii_detector
from .threats import InjectionDetector

logger = get_logger(__name__)

RATE_WINDOW_SECONDS = 60.0


class SecurityEventType(str, Enum):
    RATE_LIMIT_EXCEEDED = "rate-limit-exceeded"
    PII_DETECTED = "pii-detected"
    INJECTION_SUSPECTED = "injection-suspected"
    ANOMALOUS_PATTERN = "anomalous-pattern"
    BLOCKED_REQUEST = "blocked-request"


# Event types that escalate a block when they happen
VIOLATION_TYPES = frozenset({
    SecurityEventType.RATE_LIMIT_EXCEEDED,
    SecurityEventType.ANOMALOUS_PATTERN,
    SecurityEventType.INJECTION_SUSPECTED,
})


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass(frozen=True)
class SecurityEvent:
    """A detected threat or anomaly for one source key."""

    event_type: SecurityEventType
    source_key: str
    severity: Severity
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "source_key": self.source_key,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass
class RateLimitState:
    """Sliding-window counters and block state for one source key."""

    source_key: str
    request_times: deque = field(default_factory=deque)
    blocked_until: float | None = None
    last_violation_at: float | None = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def count_since(self, cutoff: float) -> int:
        return sum(1 for t in self.request_times if t > cutoff)


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of ``check_and_record``."""

    allowed: bool
    reason: str | None = None
    blocked_until: datetime | None = None
    pii_kinds: tuple[str, ...] = ()
    threats: tuple[str, ...] = ()


class SecurityMonitor:
    """Per-source admission control plus PII/threat scanning.

    Blocks escalate exponentially with repeated violations inside the
    event window and are only ever extended while active.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        pii_detector: PIIDetector | None = None,
        injection_detector: InjectionDetector | None = None,
        sanitize_logs: bool = True,
        clock: Callable[[], float] = time.time,
        max_events: int = 5000,
    ):
        self.config = config or RateLimitConfig()
        self.pii = pii_detector or get_pii_detector()
        self.injection = injection_detector or InjectionDetector()
        self.sanitize_logs = sanitize_logs
        self._clock = clock

        self._lock = threading.RLock()
        self._states: dict[str, RateLimitState] = {}
        self._source_events: dict[str, deque[SecurityEvent]] = {}
        self._events: deque[SecurityEvent] = deque(maxlen=max_events)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_and_record(
        self,
        source_key: str,
        request_metadata: Mapping[str, Any] | None = None,
    ) -> AdmissionDecision:
        """Decide whether ``source_key`` may make another attempt.

        Args:
            source_key: Service name or caller address
            request_metadata: Optional metadata; ``text`` is scanned for PII
                and injection markers

        Returns:
            AdmissionDecision; when denied, ``blocked_until`` is set
        """
        text = str((request_metadata or {}).get("text") or "")
        threats = tuple(self.injection.scan(text))
        pii_kinds = tuple(sorted(self.pii.kinds(text))) if text else ()
        now = self._clock()

        with self._lock:
            state = self._states.setdefault(source_key, RateLimitState(source_key))
            self._prune_state(state, now)
            self._prune_events(source_key, now)

            if state.is_blocked(now):
                self._record(
                    SecurityEventType.BLOCKED_REQUEST,
                    source_key,
                    Severity.LOW,
                    now,
                    {"blocked_until": _to_datetime(state.blocked_until).isoformat()},
                )
                return AdmissionDecision(
                    allowed=False,
                    reason="source is blocked",
                    blocked_until=_to_datetime(state.blocked_until),
                    pii_kinds=pii_kinds,
                    threats=threats,
                )

            if pii_kinds:
                # Privacy signal only; never affects admission
                self._record(
                    SecurityEventType.PII_DETECTED,
                    source_key,
                    Severity.LOW,
                    now,
                    {"kinds": list(pii_kinds)},
                )

            if threats:
                self._record(
                    SecurityEventType.INJECTION_SUSPECTED,
                    source_key,
                    Severity.HIGH,
                    now,
                    {"categories": list(threats)},
                )
                detections = self._count_events(source_key, SecurityEventType.INJECTION_SUSPECTED)
                if detections >= self.config.threat_block_threshold:
                    until = self._block(state, now)
                    logger.warning(
                        "Blocking source=%s after %d injection detections (until %s)",
                        source_key, detections, _to_datetime(until).isoformat(),
                    )
                    return AdmissionDecision(
                        allowed=False,
                        reason="repeated prompt-injection attempts",
                        blocked_until=_to_datetime(until),
                        pii_kinds=pii_kinds,
                        threats=threats,
                    )

            if self.config.enabled:
                in_window = state.count_since(now - RATE_WINDOW_SECONDS)
                if in_window >= self.config.requests_per_minute:
                    return self._deny_and_block(
                        state, now, SecurityEventType.RATE_LIMIT_EXCEEDED,
                        f"rate limit of {self.config.requests_per_minute}/min exceeded",
                        {"requests_in_window": in_window},
                        pii_kinds, threats,
                    )

                in_burst = state.count_since(now - self.config.burst_window_seconds)
                if in_burst >= self.config.burst_limit:
                    return self._deny_and_block(
                        state, now, SecurityEventType.ANOMALOUS_PATTERN,
                        f"burst limit of {self.config.burst_limit} exceeded",
                        {"requests_in_burst": in_burst},
                        pii_kinds, threats,
                    )

            state.request_times.append(now)
            return AdmissionDecision(allowed=True, pii_kinds=pii_kinds, threats=threats)

    def record_violation(
        self,
        source_key: str,
        event_type: SecurityEventType = SecurityEventType.ANOMALOUS_PATTERN,
        severity: Severity = Severity.MEDIUM,
        details: Mapping[str, Any] | None = None,
    ) -> datetime:
        """Record a violation detected elsewhere and block/extend the block.

        Returns:
            The (possibly extended) blocked-until timestamp
        """
        now = self._clock()
        with self._lock:
            state = self._states.setdefault(source_key, RateLimitState(source_key))
            self._prune_events(source_key, now)
            self._record(event_type, source_key, severity, now, details or {})
            return _to_datetime(self._block(state, now))

    def _deny_and_block(
        self,
        state: RateLimitState,
        now: float,
        event_type: SecurityEventType,
        reason: str,
        details: dict,
        pii_kinds: tuple[str, ...],
        threats: tuple[str, ...],
    ) -> AdmissionDecision:
        self._record(event_type, state.source_key, Severity.MEDIUM, now, details)
        until = self._block(state, now)
        logger.warning(
            "%s for source=%s; blocked until %s",
            reason, state.source_key, _to_datetime(until).isoformat(),
        )
        return AdmissionDecision(
            allowed=False,
            reason=reason,
            blocked_until=_to_datetime(until),
            pii_kinds=pii_kinds,
            threats=threats,
        )

    def _block(self, state: RateLimitState, now: float) -> float:
        """Block with exponential escalation; never shortens an active block."""
        violations = sum(
            1 for e in self._source_events.get(state.source_key, ())
            if e.event_type in VIOLATION_TYPES
        )
        exponent = max(0, violations - 1)
        minutes = min(
            self.config.block_duration_minutes * (2 ** exponent),
            self.config.max_block_duration_minutes,
        )
        candidate = now + minutes * 60.0
        if state.blocked_until is None or candidate > state.blocked_until:
            state.blocked_until = candidate
        state.last_violation_at = now
        return state.blocked_until

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _record(
        self,
        event_type: SecurityEventType,
        source_key: str,
        severity: Severity,
        now: float,
        details: Mapping[str, Any],
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            source_key=source_key,
            severity=severity,
            timestamp=_to_datetime(now),
            details=dict(details),
        )
        self._source_events.setdefault(source_key, deque()).append(event)
        self._events.append(event)
        return event

    def _count_events(self, source_key: str, event_type: SecurityEventType) -> int:
        return sum(1 for e in self._source_events.get(source_key, ()) if e.event_type == event_type)

    def _prune_events(self, source_key: str, now: float) -> None:
        events = self._source_events.get(source_key)
        if not events:
            return
        cutoff = _to_datetime(now - self.config.event_window_minutes * 60.0)
        while events and events[0].timestamp < cutoff:
            events.popleft()

    def _prune_state(self, state: RateLimitState, now: float) -> None:
        cutoff = now - max(RATE_WINDOW_SECONDS, self.config.burst_window_seconds)
        while state.request_times and state.request_times[0] <= cutoff:
            state.request_times.popleft()

    def prune_expired(self) -> int:
        """Drop idle sources with no active block. Returns number removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._states):
                state = self._states[key]
                self._prune_state(state, now)
                self._prune_events(key, now)
                if not state.request_times and not state.is_blocked(now) and not self._source_events.get(key):
                    del self._states[key]
                    self._source_events.pop(key, None)
                    removed += 1
        return removed

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def blocked_until(self, source_key: str) -> datetime | None:
        with self._lock:
            state = self._states.get(source_key)
            if state is None or not state.is_blocked(self._clock()):
                return None
            return _to_datetime(state.blocked_until)

    def is_blocked(self, source_key: str) -> bool:
        return self.blocked_until(source_key) is not None

    def block_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for s in self._states.values() if s.is_blocked(now))

    def recent_events(self, source_key: str | None = None, limit: int = 100) -> list[SecurityEvent]:
        with self._lock:
            events = [e for e in self._events if source_key is None or e.source_key == source_key]
        return events[-limit:]

    # ------------------------------------------------------------------
    # Sanitization
    # ------------------------------------------------------------------

    def sanitize_for_log(self, text: str | None) -> str:
        """Redact PII before text is logged or persisted."""
        if not text:
            return ""
        if not self.sanitize_logs:
            return text
        return self.pii.redact(text)
