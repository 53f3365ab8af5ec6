"""System health endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from ...api.dependencies import get_pipeline, get_settings
from ...config import Settings
from ...pipeline import Pipeline

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/healthz")
def healthcheck(
    settings: Settings = Depends(get_settings),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Return coarse-grained readiness information."""

    return {
        "status": "ok",
        "environment": settings.environment,
        "pendingStore": type(pipeline.store).__name__,
        "classifier": settings.classifier.provider,
        "whatsappConfigured": settings.whatsapp.is_configured,
        "sweeperRunning": pipeline.scheduler.running,
        "quietWindowSeconds": settings.consolidation.quiet_window_seconds,
        "metrics": pipeline.metrics.snapshot(),
    }
