"""Pipeline maintenance endpoints (cron-triggered sweep)."""

from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ...api.dependencies import get_settings, get_window_scheduler
from ...config import Settings
from ...domain.od02_window import WindowScheduler
from ...infra.logging import get_logger

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])
logger = get_logger(__name__)


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    secret = settings.cron_secret
    if not secret:
        return
    if not authorization or not hmac.compare_digest(
        authorization, f"Bearer {secret}"
    ):
        logger.warning("pipeline_sweep_unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "OD-UNAUTHORIZED",
                "message": "Missing or invalid cron secret",
                "details": {},
            },
        )


@router.api_route(
    "/sweep",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
def run_sweep(
    scheduler: WindowScheduler = Depends(get_window_scheduler),
) -> Dict[str, Any]:
    """Run one reconciling sweep and report what it did."""

    report = scheduler.sweep_once()
    logger.info("pipeline_sweep_triggered", extra=report.to_dict())
    return {"ok": True, **report.to_dict()}
