"""Configuration for the verification service.

Defaults are development-friendly; ``for_environment`` applies the
staging/production profiles and ``from_env`` layers DUALVERIFY_* variables
on top of the selected profile.
"""

import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

from .errors import RequestValidationError

ENVIRONMENTS = ("development", "staging", "production")


@dataclass
class RateLimitConfig:
    """Per-source admission control."""

    enabled: bool = True
    requests_per_minute: int = 60
    burst_limit: int = 10
    burst_window_seconds: float = 1.0
    block_duration_minutes: float = 15.0
    max_block_duration_minutes: float = 24 * 60.0
    # Security events older than this no longer count toward escalation
    event_window_minutes: float = 15.0
    # Injection detections within the event window before a source is blocked
    threat_block_threshold: int = 3


@dataclass
class AuditConfig:
    """Audit buffering, persistence and retention."""

    retention_days: int = 30
    db_path: str = "dualverify_audit.db"
    buffer_size: int = 1000
    batch_size: int = 50
    flush_interval_seconds: float = 1.0
    record_timeout_seconds: float = 0.5  # bounded backpressure wait
    flush_max_retries: int = 3
    flush_backoff_seconds: float = 0.2
    fallback_path: str = str(Path.home() / ".dualverify" / "audit_fallback.jsonl")
    sweep_interval_seconds: float = 3600.0
    excerpt_chars: int = 2000


@dataclass
class MetricsConfig:
    """Rolling window and health thresholds."""

    window_seconds: float = 300.0
    degraded_error_rate: float = 0.05
    unhealthy_error_rate: float = 0.20
    p95_sla_ms: float = 15000.0
    unreachable_after_failures: int = 3
    max_samples: int = 10000


@dataclass
class VerificationConfig:
    """Recognized configuration options for dual-provider verification."""

    environment: str = "development"
    verification_enabled: bool = True

    # Thresholds
    confidence_threshold: float = 0.7
    score_threshold: float = 70.0
    criterion_threshold: float | None = None  # None -> score_threshold
    threshold_policy: str = "all"  # "all": score AND confidence, "any": either

    # Retries and timing
    max_retries: int = 3
    timeout_seconds: float = 30.0
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    provider_max_retries: int = 2
    verification_parse_retries: int = 2

    # Providers
    primary_model: str = "sonnet"
    verification_model: str = "gpt-4o-mini"

    # Privacy
    sanitize_logs_for_pii: bool = True
    cap_safety_on_response_pii: bool = False

    rate_limiting: RateLimitConfig = field(default_factory=RateLimitConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @property
    def effective_criterion_threshold(self) -> float:
        if self.criterion_threshold is None:
            return self.score_threshold
        return self.criterion_threshold

    @property
    def require_both_thresholds(self) -> bool:
        return self.threshold_policy == "all"

    @classmethod
    def for_environment(cls, environment: str) -> "VerificationConfig":
        """Create the profile for development, staging or production."""
        env = (environment or "development").strip().lower()
        if env not in ENVIRONMENTS:
            raise RequestValidationError(
                f"Unknown environment {environment!r}; expected one of {ENVIRONMENTS}"
            )

        if env == "staging":
            return cls(
                environment=env,
                max_retries=3,
                timeout_seconds=45.0,
                rate_limiting=RateLimitConfig(requests_per_minute=80),
                audit=AuditConfig(retention_days=90),
            )
        if env == "production":
            return cls(
                environment=env,
                confidence_threshold=0.8,
                score_threshold=75.0,
                max_retries=3,
                timeout_seconds=45.0,
                rate_limiting=RateLimitConfig(requests_per_minute=60, burst_limit=5),
                audit=AuditConfig(retention_days=365),
            )
        return cls(
            environment=env,
            max_retries=2,
            timeout_seconds=30.0,
            rate_limiting=RateLimitConfig(requests_per_minute=120),
            audit=AuditConfig(retention_days=30),
        )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "VerificationConfig":
        """Build config from DUALVERIFY_ENV plus DUALVERIFY_* overrides.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            VerificationConfig for the selected profile with overrides applied
        """
        env = os.environ if environ is None else environ
        config = cls.for_environment(env.get("DUALVERIFY_ENV", "development"))

        def _get(name: str, cast):
            raw = env.get(f"DUALVERIFY_{name}")
            if raw is None or raw == "":
                return None
            try:
                return cast(raw)
            except ValueError as e:
                raise RequestValidationError(f"Invalid DUALVERIFY_{name}={raw!r}") from e

        def _bool(raw: str) -> bool:
            return raw.strip().lower() in ("1", "true", "yes", "on")

        top_level = {
            "VERIFICATION_ENABLED": ("verification_enabled", _bool),
            "CONFIDENCE_THRESHOLD": ("confidence_threshold", float),
            "SCORE_THRESHOLD": ("score_threshold", float),
            "THRESHOLD_POLICY": ("threshold_policy", str),
            "MAX_RETRIES": ("max_retries", int),
            "TIMEOUT_SECONDS": ("timeout_seconds", float),
            "PRIMARY_MODEL": ("primary_model", str),
            "VERIFICATION_MODEL": ("verification_model", str),
        }
        for name, (attr, cast) in top_level.items():
            value = _get(name, cast)
            if value is not None:
                setattr(config, attr, value)

        rate = {
            "RATE_LIMIT_ENABLED": ("enabled", _bool),
            "RATE_LIMIT_RPM": ("requests_per_minute", int),
            "RATE_LIMIT_BURST": ("burst_limit", int),
            "BLOCK_DURATION_MINUTES": ("block_duration_minutes", float),
        }
        for name, (attr, cast) in rate.items():
            value = _get(name, cast)
            if value is not None:
                setattr(config.rate_limiting, attr, value)

        retention = _get("AUDIT_RETENTION_DAYS", int)
        if retention is not None:
            config.audit.retention_days = retention
        db_path = _get("AUDIT_DB_PATH", str)
        if db_path is not None:
            config.audit.db_path = db_path

        return config

    def with_overrides(self, **overrides) -> "VerificationConfig":
        """Return a copy with top-level fields replaced."""
        return replace(self, **overrides)

    def validate(self) -> list[str]:
        """Return a list of configuration errors (empty when valid)."""
        errors = []
        if self.environment not in ENVIRONMENTS:
            errors.append(f"environment must be one of {ENVIRONMENTS}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            errors.append("confidence_threshold must be between 0 and 1")
        if not 0.0 <= self.score_threshold <= 100.0:
            errors.append("score_threshold must be between 0 and 100")
        if self.criterion_threshold is not None and not 0.0 <= self.criterion_threshold <= 100.0:
            errors.append("criterion_threshold must be between 0 and 100")
        if self.threshold_policy not in ("all", "any"):
            errors.append("threshold_policy must be 'all' or 'any'")
        if self.max_retries < 0:
            errors.append("max_retries must be >= 0")
        if self.timeout_seconds <= 0:
            errors.append("timeout_seconds must be positive")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            errors.append("retry delays must be non-negative")
        if self.provider_max_retries < 0 or self.verification_parse_retries < 0:
            errors.append("provider/parse retry ceilings must be >= 0")

        rl = self.rate_limiting
        if rl.requests_per_minute <= 0:
            errors.append("rate_limiting.requests_per_minute must be positive")
        if rl.burst_limit <= 0:
            errors.append("rate_limiting.burst_limit must be positive")
        if rl.block_duration_minutes <= 0:
            errors.append("rate_limiting.block_duration_minutes must be positive")
        if rl.max_block_duration_minutes < rl.block_duration_minutes:
            errors.append("rate_limiting.max_block_duration_minutes must be >= block_duration_minutes")

        if self.audit.retention_days <= 0:
            errors.append("audit.retention_days must be positive")
        if self.audit.buffer_size <= 0 or self.audit.batch_size <= 0:
            errors.append("audit buffer and batch sizes must be positive")

        m = self.metrics
        if not 0.0 <= m.degraded_error_rate <= m.unhealthy_error_rate <= 1.0:
            errors.append("metrics error-rate thresholds must satisfy 0 <= degraded <= unhealthy <= 1")
        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise RequestValidationError("Invalid configuration: " + "; ".join(errors))

    def to_dict(self) -> dict:
        """Non-secret view of the configuration."""
        return asdict(self)
