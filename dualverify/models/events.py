"""Streaming events emitted by ``stream_verify``.

The stream is a tagged union: consumers switch on ``kind`` and stop after
a ``complete`` or ``error`` event.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .verification import ScoreBreakdown, VerificationResult, utcnow


class StreamEventKind(str, Enum):
    PROGRESS = "progress"
    VERIFICATION = "verification"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """An attempt moved to a new stage (calling primary, scoring, retrying)."""

    request_id: str
    attempt: int
    stage: str
    message: str
    kind: StreamEventKind = StreamEventKind.PROGRESS
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "attempt": self.attempt,
            "stage": self.stage,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class VerificationEvent:
    """An attempt has been scored."""

    request_id: str
    attempt: int
    breakdown: ScoreBreakdown
    kind: StreamEventKind = StreamEventKind.VERIFICATION
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "attempt": self.attempt,
            "breakdown": self.breakdown.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CompleteEvent:
    request_id: str
    result: VerificationResult
    kind: StreamEventKind = StreamEventKind.COMPLETE
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "result": self.result.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ErrorEvent:
    request_id: str
    error: Exception
    kind: StreamEventKind = StreamEventKind.ERROR
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def error_kind(self) -> str:
        return getattr(self.error, "kind", "internal")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "error": str(self.error),
            "error_kind": self.error_kind,
            "timestamp": self.timestamp.isoformat(),
        }


StreamEvent = ProgressEvent | VerificationEvent | CompleteEvent | ErrorEvent
