"""Security monitoring: rate limiting, blocking, PII and threat detection."""

from .monitor import (
    AdmissionDecision,
    RateLimitState,
    SecurityEvent,
    SecurityEventType,
    SecurityMonitor,
)
from .pii import PIIDetector, PIIMatch, get_pii_detector, redact_pii
from .threats import InjectionDetector

__all__ = [
    "SecurityMonitor",
    "SecurityEvent",
    "SecurityEventType",
    "RateLimitState",
    "AdmissionDecision",
    "PIIDetector",
    "PIIMatch",
    "get_pii_detector",
    "redact_pii",
    "InjectionDetector",
]
