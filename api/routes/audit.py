"""
Audit trail routes.

Entries are sanitized before they are stored, so they are served as-is.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_service
from dualverify import VerificationService
from dualverify.audit import AuditOutcome, AuditQuery

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("")
async def list_audit_entries(
    service_name: str | None = None,
    outcome: str | None = None,
    request_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    service: VerificationService = Depends(get_service),
):
    """List audit entries, oldest first, keeping the most recent ``limit``."""
    try:
        parsed_outcome = AuditOutcome(outcome) if outcome else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown outcome: {outcome}")

    entries = await service.audit.query(
        AuditQuery(
            service_name=service_name,
            outcome=parsed_outcome,
            request_id=request_id,
            since=since,
            until=until,
            limit=limit,
        )
    )
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@router.get("/stats")
async def get_audit_stats(service: VerificationService = Depends(get_service)):
    """Aggregate audit statistics."""
    return await service.audit.stats()
