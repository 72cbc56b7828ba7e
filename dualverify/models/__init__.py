"""Data models for verification requests, results and stream events."""

from .events import (
    CompleteEvent,
    ErrorEvent,
    ProgressEvent,
    StreamEvent,
    StreamEventKind,
    VerificationEvent,
)
from .verification import (
    CRITERION_DESCRIPTIONS,
    STANDARD_CRITERIA,
    Criterion,
    CriterionScore,
    CustomCriterion,
    Issue,
    Message,
    ProviderCallResult,
    ProviderResponse,
    Recommendation,
    ScoreBreakdown,
    Severity,
    UsageMetadata,
    ValidationCriteria,
    VerificationRequest,
    VerificationResult,
    VerificationState,
)

__all__ = [
    # Requests
    "Message",
    "CustomCriterion",
    "ValidationCriteria",
    "VerificationRequest",
    "Criterion",
    "STANDARD_CRITERIA",
    "CRITERION_DESCRIPTIONS",

    # Provider calls
    "UsageMetadata",
    "ProviderResponse",
    "ProviderCallResult",

    # Scoring
    "Severity",
    "Recommendation",
    "Issue",
    "CriterionScore",
    "ScoreBreakdown",

    # Results
    "VerificationState",
    "VerificationResult",

    # Streaming
    "StreamEventKind",
    "ProgressEvent",
    "VerificationEvent",
    "CompleteEvent",
    "ErrorEvent",
    "StreamEvent",
]
