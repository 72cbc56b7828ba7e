"""Audit entry model: one sanitized record per verification attempt."""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..models.verification import utcnow


class AuditOutcome(str, Enum):
    """What happened to one attempt."""

    PASSED = "passed"
    RETRYING = "retrying"  # failed, another attempt follows
    EXHAUSTED = "exhausted"  # failed, last attempt
    SAFETY_FAILED = "safety_failed"
    TIMED_OUT = "timed_out"
    PROVIDER_ERROR = "provider_error"
    UNVERIFIED = "unverified"  # verification disabled


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def format_ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


@dataclass(frozen=True)
class AuditEntry:
    """Append-only snapshot of one attempt. Never mutated after creation."""

    request_id: str
    service_name: str
    attempt_number: int
    outcome: AuditOutcome
    started_at: datetime
    completed_at: datetime
    prompt_excerpt: str = ""
    response_excerpt: str = ""
    breakdown: dict[str, Any] | None = None
    latency_ms: float = 0.0
    abort_reason: str | None = None
    costs: dict[str, Any] = field(default_factory=dict)
    source_key: str | None = None
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def overall_score(self) -> float | None:
        if not self.breakdown:
            return None
        return self.breakdown.get("overall")

    @property
    def issue_categories(self) -> list[str]:
        if not self.breakdown:
            return []
        return [i.get("category", "unknown") for i in self.breakdown.get("issues", [])]

    def sanitized(self, sanitizer, excerpt_chars: int) -> "AuditEntry":
        """Copy with redacted, truncated prompt and response excerpts."""
        return replace(
            self,
            prompt_excerpt=truncate(sanitizer(self.prompt_excerpt), excerpt_chars),
            response_excerpt=truncate(sanitizer(self.response_excerpt), excerpt_chars),
            abort_reason=sanitizer(self.abort_reason) if self.abort_reason else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "request_id": self.request_id,
            "service_name": self.service_name,
            "source_key": self.source_key,
            "attempt_number": self.attempt_number,
            "outcome": self.outcome.value,
            "started_at": format_ts(self.started_at),
            "completed_at": format_ts(self.completed_at),
            "prompt_excerpt": self.prompt_excerpt,
            "response_excerpt": self.response_excerpt,
            "breakdown": self.breakdown,
            "latency_ms": round(self.latency_ms, 1),
            "abort_reason": self.abort_reason,
            "costs": self.costs,
        }

    def to_row(self) -> tuple:
        """Column values for the audit_entries table."""
        return (
            self.entry_id,
            self.request_id,
            self.service_name,
            self.source_key,
            self.attempt_number,
            self.outcome.value,
            format_ts(self.started_at),
            format_ts(self.completed_at),
            self.prompt_excerpt,
            self.response_excerpt,
            json.dumps(self.breakdown) if self.breakdown is not None else None,
            self.overall_score,
            self.latency_ms,
            self.abort_reason,
            json.dumps(self.costs) if self.costs else None,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        breakdown = data.get("breakdown")
        if isinstance(breakdown, str):
            breakdown = json.loads(breakdown)
        costs = data.get("costs") or {}
        if isinstance(costs, str):
            costs = json.loads(costs)
        return cls(
            entry_id=data["entry_id"],
            request_id=data["request_id"],
            service_name=data["service_name"],
            source_key=data.get("source_key"),
            attempt_number=int(data["attempt_number"]),
            outcome=AuditOutcome(data["outcome"]),
            started_at=parse_ts(data["started_at"]),
            completed_at=parse_ts(data["completed_at"]),
            prompt_excerpt=data.get("prompt_excerpt") or "",
            response_excerpt=data.get("response_excerpt") or "",
            breakdown=breakdown,
            latency_ms=float(data.get("latency_ms") or 0.0),
            abort_reason=data.get("abort_reason"),
            costs=costs,
        )


@dataclass(frozen=True)
class AuditQuery:
    """Filters for reading the audit log. ``limit`` keeps the most recent entries."""

    service_name: str | None = None
    outcome: AuditOutcome | None = None
    request_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = 100

    def matches(self, entry: AuditEntry) -> bool:
        if self.service_name and entry.service_name != self.service_name:
            return False
        if self.outcome and entry.outcome != self.outcome:
            return False
        if self.request_id and entry.request_id != self.request_id:
            return False
        if self.since and entry.completed_at < self.since:
            return False
        if self.until and entry.completed_at > self.until:
            return False
        return True


def new_entry(
    request_id: str,
    service_name: str,
    attempt_number: int,
    outcome: AuditOutcome,
    started_at: datetime,
    **kwargs: Any,
) -> AuditEntry:
    """Build an entry completed now."""
    return AuditEntry(
        request_id=request_id,
        service_name=service_name,
        attempt_number=attempt_number,
        outcome=outcome,
        started_at=started_at,
        completed_at=kwargs.pop("completed_at", None) or utcnow(),
        **kwargs,
    )
