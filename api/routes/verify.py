"""
Verification routes.

POST /api/verify runs one verification and maps service errors to status
codes; POST /api/verify/stream returns the event stream as NDJSON.
"""
import json
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from api.dependencies import get_service
from api.models import ErrorResponse, VerifyRequest
from dualverify import (
    DualVerifyError,
    ProviderUnavailableError,
    RateLimitError,
    RequestValidationError,
    SafetyViolationError,
    VerificationService,
    VerificationTimeoutError,
)
from dualverify.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/verify", tags=["verify"])

STATUS_BY_ERROR: list[tuple[type[DualVerifyError], int]] = [
    (RateLimitError, 429),
    (SafetyViolationError, 422),
    (VerificationTimeoutError, 504),
    (ProviderUnavailableError, 503),
    (RequestValidationError, 400),
]


def _error_response(error: DualVerifyError, request_id: str) -> JSONResponse:
    status = next((code for cls, code in STATUS_BY_ERROR if isinstance(error, cls)), 500)
    details: dict = {}
    headers: dict[str, str] = {}

    if isinstance(error, RateLimitError):
        details["source_key"] = error.source_key
        if error.blocked_until is not None:
            details["blocked_until"] = error.blocked_until.isoformat()
            wait = (error.blocked_until - datetime.now(timezone.utc)).total_seconds()
            headers["Retry-After"] = str(max(1, int(wait) + 1))
    elif isinstance(error, SafetyViolationError):
        details["breakdown"] = error.result.breakdown.to_dict()
        details["attempts_used"] = error.result.attempts_used
    elif isinstance(error, VerificationTimeoutError):
        details["deadline_seconds"] = error.deadline_seconds
        details["attempts_completed"] = error.attempts_completed
    elif isinstance(error, ProviderUnavailableError):
        details["provider"] = error.provider
        details["attempts"] = error.attempts

    if status == 500:
        logger.error("Unmapped verification error for %s: %s", request_id, error)

    body = ErrorResponse(error=str(error), kind=error.kind, request_id=request_id, details=details)
    return JSONResponse(status_code=status, content=body.model_dump(), headers=headers)


@router.post("")
async def verify(
    body: VerifyRequest,
    request: Request,
    service: VerificationService = Depends(get_service),
):
    """Generate a response with the primary provider and verify it."""
    client_host = request.client.host if request.client else None
    verification_request = body.to_domain(client_host)
    try:
        result = await service.verify(verification_request)
    except DualVerifyError as e:
        return _error_response(e, verification_request.request_id)
    return result.to_dict()


@router.post("/stream")
async def verify_stream(
    body: VerifyRequest,
    request: Request,
    service: VerificationService = Depends(get_service),
):
    """Stream progress, verification and completion events as NDJSON."""
    client_host = request.client.host if request.client else None
    verification_request = body.to_domain(client_host)

    async def _ndjson_stream():
        async for event in service.stream_verify(verification_request):
            yield json.dumps(event.to_dict(), default=str) + "\n"

    return StreamingResponse(_ndjson_stream(), media_type="application/x-ndjson")
