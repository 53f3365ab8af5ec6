"""OD-01 fragment admission: authorization check plus debounce merge."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import SimpleNamespace
from typing import Callable, Optional, Protocol

from ...infra.logging import get_logger
from ...infra.metrics import (
    FRAGMENTS_ADMITTED,
    FRAGMENTS_DENIED,
    FRAGMENTS_DUPLICATE,
    INVARIANT_VIOLATIONS,
    MetricsClient,
    get_metrics_client,
)
from ...infra.whatsapp import NotificationSender
from ..od04_pendingstore.gateway import (
    AdmitResult,
    PendingStoreGateway,
    PendingStoreInvariantError,
)
from ..od04_pendingstore.models import Fragment, PendingEntry, utcnow
from .channels import ChannelDirectory, normalize_sender_key
from .messages import ACCESS_DENIED_MESSAGE

__all__ = [
    "INTAKE_STATUS",
    "InboundMessage",
    "IntakeOutcome",
    "IntakeService",
    "Merger",
    "WindowArmer",
]

logger = get_logger(__name__)

INTAKE_STATUS = SimpleNamespace(
    ADMITTED="admitted",
    DUPLICATE="duplicate",
    ACCESS_DENIED="access_denied",
    IGNORED="ignored",
    FAILED="failed",
)

Clock = Callable[[], datetime]


class WindowArmer(Protocol):  # pragma: no cover - interface only
    def arm(self, entry: PendingEntry) -> None: ...


@dataclass(frozen=True)
class InboundMessage:
    """A transport message before channel resolution."""

    sender_key: str
    message_id: str
    text: Optional[str] = None
    media_ref: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class IntakeOutcome:
    status: str
    admit: Optional[AdmitResult] = None
    channel_id: Optional[str] = None

    @property
    def entry(self) -> Optional[PendingEntry]:
        return self.admit.entry if self.admit else None


class Merger:
    """Admits authorized fragments into the pending store and arms the window."""

    def __init__(
        self,
        store: PendingStoreGateway,
        *,
        scheduler: Optional[WindowArmer] = None,
        clock: Clock = utcnow,
        metrics: Optional[MetricsClient] = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._clock = clock
        self._metrics = metrics or get_metrics_client()

    def attach_scheduler(self, scheduler: WindowArmer) -> None:
        self._scheduler = scheduler

    def admit(self, fragment: Fragment) -> AdmitResult:
        result = self._store.admit_fragment(fragment, now=self._clock())
        entry = result.entry
        context = {
            "entry_id": entry.entry_id,
            "sender_key": entry.sender_key,
            "channel_id": entry.channel_id,
            "dedup_token": fragment.dedup_token,
            "outcome": result.outcome,
        }
        if result.is_duplicate:
            self._metrics.increment(FRAGMENTS_DUPLICATE)
            logger.info("fragment_duplicate_discarded", extra=context)
            return result

        self._metrics.increment(FRAGMENTS_ADMITTED)
        logger.info(
            "fragment_admitted",
            extra={**context, "fragment_count": len(entry.fragment_refs)},
        )
        if self._scheduler is not None:
            self._scheduler.arm(entry)
        return result


class IntakeService:
    """Entry point for transport messages."""

    def __init__(
        self,
        *,
        merger: Merger,
        directory: ChannelDirectory,
        notifier: NotificationSender,
        metrics: Optional[MetricsClient] = None,
    ) -> None:
        self._merger = merger
        self._directory = directory
        self._notifier = notifier
        self._metrics = metrics or get_metrics_client()

    def receive(self, inbound: InboundMessage) -> IntakeOutcome:
        sender_key = normalize_sender_key(inbound.sender_key)
        fragment_text = (inbound.text or "").strip() or None
        if fragment_text is None and not inbound.media_ref:
            logger.info(
                "inbound_message_ignored_empty",
                extra={"sender_key": sender_key, "message_id": inbound.message_id},
            )
            return IntakeOutcome(INTAKE_STATUS.IGNORED)

        channel = self._directory.resolve(sender_key)
        if (
            channel is None
            or not channel.is_active
            or (inbound.channel_id and inbound.channel_id != channel.channel_id)
        ):
            self._metrics.increment(FRAGMENTS_DENIED)
            logger.warning(
                "inbound_message_access_denied",
                extra={
                    "sender_key": sender_key,
                    "message_id": inbound.message_id,
                    "channel_id": channel.channel_id if channel else inbound.channel_id,
                    "channel_active": channel.is_active if channel else None,
                },
            )
            self._notifier.send(inbound.sender_key, ACCESS_DENIED_MESSAGE)
            return IntakeOutcome(INTAKE_STATUS.ACCESS_DENIED)

        fragment = Fragment(
            sender_key=sender_key,
            channel_id=channel.channel_id,
            dedup_token=inbound.message_id,
            text=fragment_text,
            media_ref=inbound.media_ref or None,
        )
        try:
            result = self._merger.admit(fragment)
        except PendingStoreInvariantError as exc:
            self._metrics.increment(INVARIANT_VIOLATIONS)
            logger.error(
                "pipeline_invariant_violation",
                extra={
                    "sender_key": exc.sender_key,
                    "channel_id": exc.channel_id,
                    "message_id": inbound.message_id,
                    "error": str(exc),
                },
            )
            return IntakeOutcome(INTAKE_STATUS.FAILED, channel_id=channel.channel_id)
        status = INTAKE_STATUS.DUPLICATE if result.is_duplicate else INTAKE_STATUS.ADMITTED
        return IntakeOutcome(status, admit=result, channel_id=channel.channel_id)
