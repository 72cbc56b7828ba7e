"""
Health and configuration routes.
"""
from fastapi import APIRouter, Depends

from api.dependencies import get_service
from api.models import HealthResponse
from dualverify import VerificationService, __version__

router = APIRouter(tags=["health"])


def _health(service: VerificationService) -> HealthResponse:
    health = service.health_status().to_dict()
    snapshot = service.metrics_snapshot()
    return HealthResponse(
        status=health["status"],
        version=__version__,
        uptime=snapshot.uptime_seconds,
        error_rate=health["error_rate"],
        p95_latency_ms=health["p95_latency_ms"],
        window_events=health["window_events"],
        providers=health["providers"],
        reasons=health["reasons"],
    )


@router.get("/", response_model=HealthResponse)
async def root_health(service: VerificationService = Depends(get_service)):
    """Health check endpoint."""
    return _health(service)


@router.get("/api/health", response_model=HealthResponse)
async def api_health(service: VerificationService = Depends(get_service)):
    """Health verdict over the recent metrics window."""
    return _health(service)


@router.post("/api/health/probe")
async def probe_providers(service: VerificationService = Depends(get_service)):
    """Send a minimal request to each provider and report reachability."""
    return {"providers": await service.probe_providers()}


@router.get("/api/config")
async def get_config(service: VerificationService = Depends(get_service)):
    """Active non-secret configuration."""
    return service.describe()
