"""
Metrics routes: structured snapshot and Prometheus exposition.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import Response

from api.dependencies import get_service
from dualverify import VerificationService
from dualverify.metrics import PrometheusExporter

router = APIRouter(tags=["metrics"])


@router.get("/api/metrics")
async def get_metrics(service: VerificationService = Depends(get_service)):
    """Aggregated request, latency, error and cost metrics."""
    return service.metrics_snapshot().to_dict()


@router.get("/metrics")
async def prometheus_metrics(service: VerificationService = Depends(get_service)):
    """Prometheus text exposition."""
    return Response(
        content=service.prometheus_metrics(),
        media_type=PrometheusExporter.content_type,
    )
