"""Builders wiring the pipeline with in-memory collaborators for tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from backend.app.config.loader import ConsolidationConfig, Settings
from backend.app.domain.od01_intake import (
    Channel,
    InMemoryChannelDirectory,
    IntakeService,
    Merger,
)
from backend.app.domain.od02_window import WindowScheduler
from backend.app.domain.od03_validation import Validator
from backend.app.domain.od04_pendingstore.gateway import InMemoryPendingStoreGateway
from backend.app.domain.od05_drafts.gateway import InMemoryDraftRecordSink
from backend.app.infra.classifier import StubOfferClassifier
from backend.app.infra.metrics import InMemoryMetricsClient
from backend.app.infra.whatsapp import LoggingNotificationSender
from backend.app.pipeline import Pipeline

from .clock import FakeClock, FakeTimerFactory

SENDER = "4915100000000"
CHANNEL_ID = "demo-market"


class RecordingEvents:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def emit(self, topic, payload) -> None:
        self.events.append((topic, payload))


@dataclass
class Harness:
    clock: FakeClock
    classifier: object
    timers: FakeTimerFactory
    store: InMemoryPendingStoreGateway
    drafts: InMemoryDraftRecordSink
    notifier: LoggingNotificationSender
    metrics: InMemoryMetricsClient
    events: RecordingEvents
    directory: InMemoryChannelDirectory
    validator: Validator
    scheduler: WindowScheduler
    merger: Merger
    intake: IntakeService


def build_harness(
    *,
    classifier=None,
    config: Optional[ConsolidationConfig] = None,
    store=None,
    drafts=None,
    channels: Iterable[tuple] = ((Channel(CHANNEL_ID, "Demo Markt"), [SENDER]),),
) -> Harness:
    clock = FakeClock()
    timers = FakeTimerFactory()
    config = config or ConsolidationConfig()
    classifier = classifier or StubOfferClassifier()
    events = RecordingEvents()
    store = store or InMemoryPendingStoreGateway()
    drafts = drafts or InMemoryDraftRecordSink(events=events)
    notifier = LoggingNotificationSender()
    metrics = InMemoryMetricsClient()
    directory = InMemoryChannelDirectory()
    for channel, senders in channels:
        directory.register(channel, senders)

    validator = Validator(
        store=store,
        classifier=classifier,
        drafts=drafts,
        notifier=notifier,
        config=config,
        clock=clock,
        metrics=metrics,
        events=events,
    )
    scheduler = WindowScheduler(
        store=store,
        validator=validator,
        config=config,
        clock=clock,
        metrics=metrics,
        timer_factory=timers,
    )
    merger = Merger(store, scheduler=scheduler, clock=clock, metrics=metrics)
    intake = IntakeService(
        merger=merger, directory=directory, notifier=notifier, metrics=metrics
    )
    return Harness(
        clock=clock,
        classifier=classifier,
        timers=timers,
        store=store,
        drafts=drafts,
        notifier=notifier,
        metrics=metrics,
        events=events,
        directory=directory,
        validator=validator,
        scheduler=scheduler,
        merger=merger,
        intake=intake,
    )


def pipeline_for(harness: Harness, settings: Optional[Settings] = None) -> Pipeline:
    """Expose a harness as the ``Pipeline`` the API and workers expect."""

    return Pipeline(
        settings=settings or Settings(),
        store=harness.store,
        drafts=harness.drafts,
        classifier=harness.classifier,
        notifier=harness.notifier,
        directory=harness.directory,
        validator=harness.validator,
        scheduler=harness.scheduler,
        intake=harness.intake,
        metrics=harness.metrics,
    )
