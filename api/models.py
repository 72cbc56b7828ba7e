"""
Pydantic models for API request/response validation.
"""
from typing import Any

from pydantic import BaseModel, Field

from dualverify.models import (
    CustomCriterion,
    Message,
    ValidationCriteria,
    VerificationRequest,
)


class MessageIn(BaseModel):
    """One chat message of the prompt."""
    role: str = Field(default="user", pattern="^(system|user|assistant)$")
    content: str


class CustomCriterionIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    weight: float = 1.0


class CriteriaIn(BaseModel):
    """Active criteria and their weights. Omitted criteria are inactive."""
    accuracy: float | None = None
    completeness: float | None = None
    relevance: float | None = None
    consistency: float | None = None
    safety: float | None = None
    format: float | None = None
    custom: list[CustomCriterionIn] = Field(default_factory=list)

    def to_domain(self) -> ValidationCriteria:
        return ValidationCriteria(
            accuracy=self.accuracy,
            completeness=self.completeness,
            relevance=self.relevance,
            consistency=self.consistency,
            safety=self.safety,
            format=self.format,
            custom=tuple(
                CustomCriterion(name=c.name, description=c.description, weight=c.weight)
                for c in self.custom
            ),
        )


class VerifyRequest(BaseModel):
    """Request model for POST /api/verify.

    Either ``prompt`` (single user turn, optional ``system``) or ``messages``
    (full conversation) must be given.
    """
    service_name: str = Field(..., min_length=1, description="Calling service")
    prompt: str | None = Field(default=None, description="Single user prompt")
    system: str | None = None
    messages: list[MessageIn] | None = None
    context: dict[str, Any] | None = None
    criteria: CriteriaIn | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)
    timeout_seconds: float | None = Field(default=None, gt=0)
    source_key: str | None = None

    def to_domain(self, client_host: str | None = None) -> VerificationRequest:
        if self.messages:
            messages = tuple(Message(role=m.role, content=m.content) for m in self.messages)
        else:
            messages = []
            if self.system:
                messages.append(Message(role="system", content=self.system))
            messages.append(Message(role="user", content=self.prompt or ""))
            messages = tuple(messages)
        return VerificationRequest(
            service_name=self.service_name,
            prompt=messages,
            context=self.context,
            validation_criteria=self.criteria.to_domain() if self.criteria else None,
            max_retries=self.max_retries,
            timeout_seconds=self.timeout_seconds,
            source_key=self.source_key or client_host,
        )


class ErrorResponse(BaseModel):
    """Error body returned for mapped verification failures."""
    error: str
    kind: str
    request_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime: float
    error_rate: float
    p95_latency_ms: float | None = None
    window_events: int = 0
    providers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    reasons: list[str] = Field(default_factory=list)
