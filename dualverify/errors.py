"""Error taxonomy surfaced to callers of the verification service."""

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models.verification import ProviderCallResult, VerificationResult


class DualVerifyError(Exception):
    """Base class for all errors raised by dualverify."""

    kind = "internal"


class RequestValidationError(DualVerifyError, ValueError):
    """Malformed request or configuration. Never retried."""

    kind = "validation"


class RateLimitError(DualVerifyError):
    """Admission denied for a source key. Not retried by this layer."""

    kind = "rate_limited"

    def __init__(
        self,
        source_key: str,
        blocked_until: datetime | None,
        reason: str = "rate limit exceeded",
    ):
        self.source_key = source_key
        self.blocked_until = blocked_until
        self.reason = reason
        until = blocked_until.isoformat() if blocked_until else "unknown"
        super().__init__(f"{reason} for '{source_key}' (blocked until {until})")


class ProviderUnavailableError(DualVerifyError):
    """Primary or verification provider unreachable after provider-level retries."""

    kind = "provider_unavailable"

    def __init__(self, provider: str, attempts: int, cause: Exception | None = None):
        self.provider = provider
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Provider '{provider}' unavailable after {attempts} call(s): {cause}"
        )


class VerificationError(DualVerifyError):
    """The verification provider returned output that could not be parsed."""

    kind = "verification"

    def __init__(self, message: str, call: "ProviderCallResult | None" = None):
        self.call = call
        super().__init__(message)


class SafetyViolationError(DualVerifyError):
    """The safety criterion failed and no attempt produced a passing response.

    The offending text is withheld: ``result.response`` is empty, while the
    score breakdown is kept so callers can explain the refusal.
    """

    kind = "safety_violation"

    def __init__(self, result: "VerificationResult", message: str | None = None):
        self.result = result
        super().__init__(
            message
            or f"Safety criterion failed after {result.attempts_used} attempt(s)"
        )


class VerificationTimeoutError(DualVerifyError, TimeoutError):
    """Deadline exceeded before any attempt could be scored."""

    kind = "timeout"

    def __init__(self, deadline_seconds: float, attempts_completed: int = 0):
        self.deadline_seconds = deadline_seconds
        self.attempts_completed = attempts_completed
        super().__init__(
            f"Verification deadline of {deadline_seconds:.2f}s exceeded "
            f"({attempts_completed} attempt(s) completed)"
        )


# ---------------------------------------------------------------------------
# Provider-level errors (raised by adapters, classified by the orchestrator)
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Base class for failures reported by a provider adapter."""

    transient = True

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderTimeoutError(ProviderError):
    """Provider call timed out."""


class ProviderRateLimitedError(ProviderError):
    """Provider answered 429 / quota exceeded."""

    def __init__(self, provider: str, message: str, retry_after: float | None = None):
        super().__init__(provider, message)
        self.retry_after = retry_after


class ProviderServerError(ProviderError):
    """Provider answered 5xx or dropped the connection."""


class ProviderClientError(ProviderError):
    """Provider rejected the request (4xx other than 429). Not retried."""

    transient = False
