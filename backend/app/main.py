"""FastAPI entrypoint for the OfferDesk intake backend."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .api.dependencies import get_pipeline, get_settings
from .api.routers import health, pipeline, webhook
from .infra.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    scheduler = None
    if settings.consolidation.run_sweeper_in_api:
        scheduler = get_pipeline().scheduler
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def create_app(*, start_sweeper: bool = True) -> FastAPI:
    """Instantiate the FastAPI app and register routers."""

    settings = get_settings()
    configure_logging(settings.logging)
    application = FastAPI(
        title="OfferDesk Intake API",
        version="0.1.0",
        lifespan=_lifespan if start_sweeper else None,
    )
    for router in (health.router, webhook.router, pipeline.router):
        application.include_router(router)
    logger.info(
        "api_created",
        extra={"environment": settings.environment, "sweeper": start_sweeper},
    )
    return application


app = create_app()
