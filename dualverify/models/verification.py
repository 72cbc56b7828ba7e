"""Data models for verification requests, scores and results."""

import math
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import RequestValidationError


class Criterion(str, Enum):
    """The six standard scoring dimensions."""

    ACCURACY = "accuracy"
    COMPLETENESS = "completeness"
    RELEVANCE = "relevance"
    CONSISTENCY = "consistency"
    SAFETY = "safety"
    FORMAT = "format"


STANDARD_CRITERIA: tuple[str, ...] = tuple(c.value for c in Criterion)

CRITERION_DESCRIPTIONS = {
    Criterion.ACCURACY.value: "Is the information factually correct and based on the provided context?",
    Criterion.COMPLETENESS.value: "Does the response fully address all aspects of the prompt?",
    Criterion.RELEVANCE.value: "Is the response directly relevant to the question asked?",
    Criterion.CONSISTENCY.value: "Is the response internally consistent and logical?",
    Criterion.SAFETY.value: "Does the response avoid harmful, biased, or inappropriate content and PII exposure?",
    Criterion.FORMAT.value: "Is the response properly structured and formatted as requested?",
}


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Recommendation(str, Enum):
    APPROVE = "approve"
    RETRY = "retry"
    MANUAL_REVIEW = "manual_review"


class VerificationState(str, Enum):
    """Lifecycle of a single Verify call."""

    PENDING = "pending"
    CALLING_PRIMARY = "calling_primary"
    SCORING = "scoring"
    PASSED = "passed"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    SAFETY_FAILED = "safety_failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"  # verification disabled


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """One entry of a chat-style prompt."""

    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class CustomCriterion:
    """A caller-defined scoring dimension."""

    name: str
    description: str
    weight: float = 1.0


@dataclass(frozen=True)
class ValidationCriteria:
    """Which criteria are active and how much each one weighs.

    A standard criterion is active when its weight is not None. Inactive
    criteria are left out of the weighted average entirely.
    """

    accuracy: float | None = None
    completeness: float | None = None
    relevance: float | None = None
    consistency: float | None = None
    safety: float | None = None
    format: float | None = None
    custom: tuple[CustomCriterion, ...] = ()

    @classmethod
    def default(cls) -> "ValidationCriteria":
        """All six standard criteria at unit weight."""
        return cls(**{name: 1.0 for name in STANDARD_CRITERIA})

    def active_weights(self) -> dict[str, float]:
        """Ordered mapping of active criterion name -> weight."""
        weights = {
            name: float(getattr(self, name))
            for name in STANDARD_CRITERIA
            if getattr(self, name) is not None
        }
        for custom in self.custom:
            weights[custom.name] = float(custom.weight)
        return weights

    def is_empty(self) -> bool:
        return not self.active_weights()

    def custom_descriptions(self) -> dict[str, str]:
        return {c.name: c.description for c in self.custom}

    def validate(self) -> None:
        """Raise RequestValidationError when weights are unusable."""
        names = [c.name for c in self.custom]
        if len(set(names)) != len(names):
            raise RequestValidationError("Custom criterion names must be unique")
        for name in names:
            if not name or not name.strip():
                raise RequestValidationError("Custom criterion name must be non-empty")
            if name in STANDARD_CRITERIA:
                raise RequestValidationError(
                    f"Custom criterion {name!r} collides with a standard criterion"
                )

        weights = self.active_weights()
        for name, weight in weights.items():
            if not math.isfinite(weight) or weight <= 0:
                raise RequestValidationError(
                    f"Criterion {name!r} must have a positive weight, got {weight}"
                )
        if weights and sum(weights.values()) <= 0:
            raise RequestValidationError("Criterion weights must sum to a positive value")


@dataclass(frozen=True)
class VerificationRequest:
    """Immutable request created by a caller; never mutated afterwards."""

    service_name: str
    prompt: tuple[Message, ...]
    context: Mapping[str, Any] | None = None
    validation_criteria: ValidationCriteria | None = None
    max_retries: int | None = None
    source_key: str | None = None  # caller IP or service; defaults to service_name
    timeout_seconds: float | None = None
    request_id: str = field(default_factory=lambda: f"verify_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        messages = tuple(
            m if isinstance(m, Message) else Message(role=m["role"], content=m["content"])
            for m in self.prompt
        )
        object.__setattr__(self, "prompt", messages)

    @classmethod
    def from_text(
        cls,
        service_name: str,
        prompt: str,
        system: str | None = None,
        **kwargs: Any,
    ) -> "VerificationRequest":
        """Convenience constructor for a single user prompt."""
        messages = []
        if system:
            messages.append(Message(role="system", content=system))
        messages.append(Message(role="user", content=prompt))
        return cls(service_name=service_name, prompt=tuple(messages), **kwargs)

    @property
    def effective_source_key(self) -> str:
        return self.source_key or self.service_name

    @property
    def prompt_text(self) -> str:
        """Flattened prompt, used for scanning and audit excerpts."""
        return "\n".join(f"{m.role}: {m.content}" for m in self.prompt)

    def validate(self) -> None:
        if not self.service_name or not self.service_name.strip():
            raise RequestValidationError("service_name is required")
        if not self.prompt or not any(m.content.strip() for m in self.prompt):
            raise RequestValidationError("prompt must contain at least one non-empty message")
        if self.max_retries is not None and self.max_retries < 0:
            raise RequestValidationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise RequestValidationError("timeout_seconds must be positive")
        if self.validation_criteria is not None:
            self.validation_criteria.validate()


@dataclass(frozen=True)
class UsageMetadata:
    """Provider-reported token and cost data for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None
    model: str | None = None
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ProviderResponse:
    """What a provider adapter returns from ``generate``."""

    text: str
    usage: UsageMetadata = field(default_factory=UsageMetadata)


@dataclass(frozen=True)
class ProviderCallResult:
    """Outcome of one (possibly retried) provider call within an attempt."""

    provider: str
    text: str
    latency_ms: float
    usage: UsageMetadata
    calls: int = 1


@dataclass(frozen=True)
class Issue:
    """A specific problem the verification provider found."""

    category: str
    severity: Severity
    description: str
    suggestion: str | None = None
    location: str | None = None

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "severity": self.severity.value,
            "description": self.description,
            "suggestion": self.suggestion,
            "location": self.location,
        }


@dataclass(frozen=True)
class CriterionScore:
    name: str
    score: int
    weight: float
    passed: bool


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-criterion scores plus the derived overall score and verdict."""

    criteria: tuple[CriterionScore, ...]
    overall: float
    confidence: float
    passed: bool
    issues: tuple[Issue, ...] = ()
    recommendation: Recommendation = Recommendation.MANUAL_REVIEW
    feedback: str | None = None
    parse_failed: bool = False

    @classmethod
    def compute(
        cls,
        scores: Mapping[str, int],
        weights: Mapping[str, float],
        confidence: float,
        *,
        score_threshold: float,
        confidence_threshold: float,
        criterion_threshold: float,
        require_both: bool = True,
        issues: Iterable[Issue] = (),
        recommendation: Recommendation = Recommendation.MANUAL_REVIEW,
        feedback: str | None = None,
    ) -> "ScoreBreakdown":
        """Derive the weighted overall score and the pass verdict.

        overall = sum(weight_i * score_i) / sum(weight_i) over active criteria.
        A failing safety criterion fails the breakdown regardless of overall.
        """
        total_weight = sum(weights.values())
        if total_weight <= 0:
            raise RequestValidationError("Active criterion weights must sum to a positive value")

        criteria = tuple(
            CriterionScore(
                name=name,
                score=scores[name],
                weight=weight,
                passed=scores[name] >= criterion_threshold,
            )
            for name, weight in weights.items()
        )
        overall = sum(c.weight * c.score for c in criteria) / total_weight
        # Guard float drift so overall never leaves [min, max] of its inputs
        overall = min(max(overall, min(c.score for c in criteria)), max(c.score for c in criteria))

        score_ok = overall >= score_threshold
        confidence_ok = confidence >= confidence_threshold
        passed = (score_ok and confidence_ok) if require_both else (score_ok or confidence_ok)
        safety = next((c for c in criteria if c.name == Criterion.SAFETY.value), None)
        if safety is not None and not safety.passed:
            passed = False

        return cls(
            criteria=criteria,
            overall=overall,
            confidence=confidence,
            passed=passed,
            issues=tuple(issues),
            recommendation=recommendation,
            feedback=feedback,
        )

    @classmethod
    def conservative(cls, weights: Mapping[str, float], reason: str) -> "ScoreBreakdown":
        """Fail-score used when the verifier's output could not be obtained."""
        return cls(
            criteria=tuple(
                CriterionScore(name=name, score=0, weight=weight, passed=False)
                for name, weight in weights.items()
            ),
            overall=0.0,
            confidence=0.0,
            passed=False,
            issues=(
                Issue(
                    category="verification",
                    severity=Severity.CRITICAL,
                    description=reason,
                    suggestion="Manual review required",
                ),
            ),
            recommendation=Recommendation.MANUAL_REVIEW,
            feedback=reason,
            parse_failed=True,
        )

    def criterion(self, name: str) -> CriterionScore | None:
        return next((c for c in self.criteria if c.name == name), None)

    @property
    def failed_criteria(self) -> list[CriterionScore]:
        return [c for c in self.criteria if not c.passed]

    @property
    def safety_failed(self) -> bool:
        safety = self.criterion(Criterion.SAFETY.value)
        return safety is not None and not safety.passed and not self.parse_failed

    def to_dict(self) -> dict:
        return {
            "overall": round(self.overall, 2),
            "confidence": round(self.confidence, 3),
            "passed": self.passed,
            "criteria": {
                c.name: {"score": c.score, "weight": c.weight, "passed": c.passed}
                for c in self.criteria
            },
            "issues": [i.to_dict() for i in self.issues],
            "recommendation": self.recommendation.value,
            "feedback": self.feedback,
            "parse_failed": self.parse_failed,
        }


@dataclass(frozen=True)
class VerificationResult:
    """Terminal record returned to the caller."""

    request_id: str
    service_name: str
    response: str
    verified: bool
    breakdown: ScoreBreakdown
    attempts_used: int
    total_latency_ms: float
    warnings: tuple[str, ...] = ()
    state: VerificationState = VerificationState.PASSED
    timed_out: bool = False
    selected_attempt: int = 1

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "service_name": self.service_name,
            "response": self.response,
            "verified": self.verified,
            "breakdown": self.breakdown.to_dict(),
            "attempts_used": self.attempts_used,
            "selected_attempt": self.selected_attempt,
            "total_latency_ms": round(self.total_latency_ms, 1),
            "warnings": list(self.warnings),
            "state": self.state.value,
            "timed_out": self.timed_out,
        }
