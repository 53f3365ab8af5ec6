"""Wiring for the consolidation pipeline shared by the API and workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import Settings, load_settings
from .domain.od01_intake import (
    ChannelDirectory,
    InMemoryChannelDirectory,
    IntakeService,
    Merger,
    PostgresChannelDirectory,
)
from .domain.od02_window import WindowScheduler
from .domain.od03_validation import Validator
from .domain.od04_pendingstore.gateway import (
    PendingStoreGateway,
    build_pending_store_gateway,
)
from .domain.od05_drafts.gateway import DraftRecordSink, build_draft_record_sink
from .infra.classifier import OfferClassifier, build_offer_classifier
from .infra.logging import get_logger
from .infra.metrics import MetricsClient, get_metrics_client
from .infra.whatsapp import (
    NotificationSender,
    build_notification_sender,
    build_whatsapp_client,
)

__all__ = ["Pipeline", "build_pipeline"]

logger = get_logger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    store: PendingStoreGateway
    drafts: DraftRecordSink
    classifier: OfferClassifier
    notifier: NotificationSender
    directory: ChannelDirectory
    validator: Validator
    scheduler: WindowScheduler
    intake: IntakeService
    metrics: MetricsClient


def build_pipeline(
    settings: Optional[Settings] = None,
    *,
    store: Optional[PendingStoreGateway] = None,
    drafts: Optional[DraftRecordSink] = None,
    classifier: Optional[OfferClassifier] = None,
    notifier: Optional[NotificationSender] = None,
    directory: Optional[ChannelDirectory] = None,
    metrics: Optional[MetricsClient] = None,
    prefer_postgres: bool = True,
    fallback_to_memory: bool = False,
) -> Pipeline:
    """Assemble the pipeline; any collaborator may be supplied by the caller."""

    settings = settings or load_settings()
    whatsapp_client = build_whatsapp_client(settings.whatsapp)
    metrics = metrics or get_metrics_client()

    store = store or build_pending_store_gateway(
        prefer_postgres=prefer_postgres, fallback_to_memory=fallback_to_memory
    )
    drafts = drafts or build_draft_record_sink(
        prefer_postgres=prefer_postgres, fallback_to_memory=fallback_to_memory
    )
    classifier = classifier or build_offer_classifier(
        settings.classifier,
        media_loader=whatsapp_client.download_media if whatsapp_client else None,
    )
    notifier = notifier or build_notification_sender(
        settings.whatsapp, client=whatsapp_client
    )
    if directory is None:
        if settings.channels or not prefer_postgres:
            directory = InMemoryChannelDirectory.from_settings(settings.channels)
        else:
            directory = PostgresChannelDirectory()

    validator = Validator(
        store=store,
        classifier=classifier,
        drafts=drafts,
        notifier=notifier,
        config=settings.consolidation,
        metrics=metrics,
    )
    scheduler = WindowScheduler(
        store=store,
        validator=validator,
        config=settings.consolidation,
        metrics=metrics,
    )
    merger = Merger(store, scheduler=scheduler, metrics=metrics)
    intake = IntakeService(
        merger=merger, directory=directory, notifier=notifier, metrics=metrics
    )
    logger.info(
        "pipeline_built",
        extra={
            "environment": settings.environment,
            "store": type(store).__name__,
            "drafts": type(drafts).__name__,
            "classifier": type(classifier).__name__,
            "notifier": type(notifier).__name__,
            "directory": type(directory).__name__,
        },
    )
    return Pipeline(
        settings=settings,
        store=store,
        drafts=drafts,
        classifier=classifier,
        notifier=notifier,
        directory=directory,
        validator=validator,
        scheduler=scheduler,
        intake=intake,
        metrics=metrics,
    )
