"""dualverify: verify AI-generated responses with a second, independent provider."""

from .config import AuditConfig, MetricsConfig, RateLimitConfig, VerificationConfig
from .errors import (
    DualVerifyError,
    ProviderUnavailableError,
    RateLimitError,
    RequestValidationError,
    SafetyViolationError,
    VerificationError,
    VerificationTimeoutError,
)
from .models import (
    Criterion,
    CustomCriterion,
    Message,
    ScoreBreakdown,
    ValidationCriteria,
    VerificationRequest,
    VerificationResult,
)
from .providers import CallableProvider, Provider
from .service import VerificationService

__version__ = "0.1.0"

__all__ = [
    "VerificationService",
    "VerificationConfig",
    "RateLimitConfig",
    "AuditConfig",
    "MetricsConfig",
    "Provider",
    "CallableProvider",
    "Message",
    "Criterion",
    "CustomCriterion",
    "ValidationCriteria",
    "VerificationRequest",
    "VerificationResult",
    "ScoreBreakdown",
    "DualVerifyError",
    "RequestValidationError",
    "RateLimitError",
    "ProviderUnavailableError",
    "VerificationError",
    "SafetyViolationError",
    "VerificationTimeoutError",
]
