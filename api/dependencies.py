"""
Request-scoped access to the VerificationService owned by the app.
"""
from fastapi import HTTPException, Request

from dualverify import VerificationService


def get_service(request: Request) -> VerificationService:
    """Return the service stored on ``app.state`` by the lifespan."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Verification service not started")
    return service
