"""OD-03 validator/committer.

A validator claims a quiet pending entry with a compare-and-set, asks the
classifier for a verdict, then either commits a draft record or sends a
reason-specific rejection. Every write after the claim is conditioned on the
claim token, so a validator whose claim was recovered by the sweep can no
longer retire or release the entry. Before writing a draft the holder records
a commit intent, which keeps recovery from releasing the entry underneath it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Callable, Optional
from uuid import uuid4

from ...config.loader import ConsolidationConfig
from ...infra.classifier import (
    ClassificationResult,
    ClassifierGatewayError,
    ClassifierRequest,
    OfferClassifier,
)
from ...infra.events import OFFER_REJECTED, EventEmitter, get_event_emitter
from ...infra.logging import get_logger
from ...infra.metrics import (
    CLAIMS_RECOVERED,
    DRAFTS_COMMITTED,
    INVARIANT_VIOLATIONS,
    VALIDATION_REJECTED,
    VALIDATION_RELEASED,
    MetricsClient,
    get_metrics_client,
)
from ...infra.whatsapp import NotificationSender
from ..od01_intake.messages import rejection_message
from ..od04_pendingstore.gateway import (
    PendingStoreError,
    PendingStoreGateway,
    PendingStoreInvariantError,
)
from ..od04_pendingstore.models import PendingEntry, utcnow
from ..od04_pendingstore.states import CLAIM_STATUS
from ..od05_drafts.gateway import DraftRecordSink, DraftSinkError
from ..od05_drafts.models import DraftRecord

__all__ = [
    "PROCESS_OUTCOME",
    "RECOVERY_ACTION",
    "ProcessResult",
    "Validator",
    "retry_delay",
]

logger = get_logger(__name__)

# ``skipped_already_claimed`` also covers an entry that no longer exists: it was
# retired (or folded into a newer entry) by whoever held it before.
PROCESS_OUTCOME = SimpleNamespace(
    COMMITTED="committed",
    REJECTED="rejected",
    SKIPPED_NOT_READY="skipped_not_ready",
    SKIPPED_ALREADY_CLAIMED="skipped_already_claimed",
    RELEASED="released",
    CLAIM_EXPIRED="claim_expired",
    FAILED="failed",
)

RECOVERY_ACTION = SimpleNamespace(
    RETIRED="retired",
    RELEASED="released",
    DEFERRED="deferred",
    LOST="lost",
)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class ProcessResult:
    outcome: str
    entry_id: str
    draft: Optional[DraftRecord] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (PROCESS_OUTCOME.COMMITTED, PROCESS_OUTCOME.REJECTED)


def retry_delay(config: ConsolidationConfig, attempts: int) -> timedelta:
    """Exponential backoff for the ``attempts``-th transient failure, capped."""

    exponent = max(attempts - 1, 0)
    seconds = min(
        config.retry_backoff_seconds * (2**exponent),
        config.retry_backoff_max_seconds,
    )
    return timedelta(seconds=seconds)


class Validator:
    """Claims quiet entries and drives them to a terminal state."""

    def __init__(
        self,
        *,
        store: PendingStoreGateway,
        classifier: OfferClassifier,
        drafts: DraftRecordSink,
        notifier: NotificationSender,
        config: Optional[ConsolidationConfig] = None,
        clock: Clock = utcnow,
        metrics: Optional[MetricsClient] = None,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._drafts = drafts
        self._notifier = notifier
        self._config = config or ConsolidationConfig()
        self._clock = clock
        self._metrics = metrics or get_metrics_client()
        self._events = events or get_event_emitter()

    @property
    def quiet_window(self) -> timedelta:
        return timedelta(seconds=self._config.quiet_window_seconds)

    @property
    def claim_timeout(self) -> timedelta:
        return timedelta(seconds=self._config.claim_timeout_seconds)

    def try_claim_and_process(self, entry_id: str) -> ProcessResult:
        claim_token = str(uuid4())
        attempt = self._store.try_claim(
            entry_id,
            claim_token=claim_token,
            now=self._clock(),
            quiet_window=self.quiet_window,
        )
        if not attempt.won:
            outcome = (
                PROCESS_OUTCOME.SKIPPED_NOT_READY
                if attempt.status == CLAIM_STATUS.NOT_READY
                else PROCESS_OUTCOME.SKIPPED_ALREADY_CLAIMED
            )
            logger.debug(
                "validation_claim_skipped",
                extra={"entry_id": entry_id, "outcome": outcome},
            )
            return ProcessResult(outcome, entry_id)

        entry = attempt.entry
        logger.info(
            "validation_claimed",
            extra={
                "entry_id": entry_id,
                "sender_key": entry.sender_key,
                "channel_id": entry.channel_id,
                "attempts": entry.attempts,
                "fragment_count": len(entry.fragment_refs),
            },
        )

        try:
            verdict = self._classifier.classify(
                ClassifierRequest(text=entry.text_fragment, media_ref=entry.media_ref)
            )
        except ClassifierGatewayError as exc:
            log = logger.warning if exc.retryable else logger.error
            log(
                "validation_classifier_failed",
                extra={
                    "entry_id": entry_id,
                    "error_code": exc.code,
                    "retryable": exc.retryable,
                    "error": str(exc),
                },
            )
            return self._release_for_retry(entry, claim_token, exc.code)
        except Exception:
            logger.exception(
                "validation_classifier_crashed", extra={"entry_id": entry_id}
            )
            return self._release_for_retry(entry, claim_token, "classifier_error")

        if verdict.is_valid:
            return self._commit(entry, claim_token, verdict)
        return self._reject(entry, claim_token, verdict)

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------
    def _commit(
        self, entry: PendingEntry, claim_token: str, verdict: ClassificationResult
    ) -> ProcessResult:
        now = self._clock()
        try:
            marked = self._store.mark_committing(
                entry.entry_id,
                claim_token=claim_token,
                now=now,
                claim_timeout=self.claim_timeout,
            )
        except PendingStoreError:
            logger.warning(
                "validation_commit_intent_failed",
                extra={"entry_id": entry.entry_id},
                exc_info=True,
            )
            return self._release_for_retry(entry, claim_token, "store_error")
        if marked is None:
            logger.warning(
                "validation_claim_expired_before_commit",
                extra={"entry_id": entry.entry_id, "claimed_at": entry.claimed_at},
            )
            return ProcessResult(PROCESS_OUTCOME.CLAIM_EXPIRED, entry.entry_id)

        extraction = verdict.extraction
        draft = DraftRecord.from_entry(
            entry,
            item_name=extraction.item_name,
            price=extraction.price,
            validity_days=extraction.validity_days
            or self._config.default_validity_days,
            unit=extraction.unit,
            description=extraction.description,
            category=extraction.category,
            classifier_model=verdict.model_used,
            timestamp=now,
        )
        try:
            stored = self._drafts.create_draft(draft)
        except DraftSinkError as exc:
            logger.warning(
                "validation_draft_create_failed",
                extra={"entry_id": entry.entry_id, "error": str(exc)},
                exc_info=True,
            )
            return self._release_for_retry(entry, claim_token, "draft_sink_error")

        try:
            retired = self._store.retire(entry.entry_id, claim_token=claim_token)
        except PendingStoreError:
            logger.warning(
                "validation_retire_failed",
                extra={"entry_id": entry.entry_id, "draft_id": stored.draft_id},
                exc_info=True,
            )
            retired = False
        if not retired:
            logger.warning(
                "validation_retire_deferred_to_recovery",
                extra={"entry_id": entry.entry_id, "draft_id": stored.draft_id},
            )

        self._metrics.increment(DRAFTS_COMMITTED)
        logger.info(
            "validation_committed",
            extra={
                "entry_id": entry.entry_id,
                "draft_id": stored.draft_id,
                "channel_id": entry.channel_id,
                "item_name": stored.item_name,
                "price": str(stored.price),
            },
        )
        return ProcessResult(PROCESS_OUTCOME.COMMITTED, entry.entry_id, draft=stored)

    def _reject(
        self, entry: PendingEntry, claim_token: str, verdict: ClassificationResult
    ) -> ProcessResult:
        reason = verdict.rejection_reason
        try:
            retired = self._store.retire(entry.entry_id, claim_token=claim_token)
        except PendingStoreError as exc:
            logger.warning(
                "validation_reject_retire_failed",
                extra={"entry_id": entry.entry_id, "error": str(exc)},
            )
            return self._release_for_retry(entry, claim_token, "store_error")
        if not retired:
            # Claim was recovered by the sweep; the new holder notifies.
            logger.warning(
                "validation_reject_claim_lost",
                extra={"entry_id": entry.entry_id, "reason": reason},
            )
            return ProcessResult(
                PROCESS_OUTCOME.CLAIM_EXPIRED, entry.entry_id, reason=reason
            )

        self._notifier.send(entry.sender_key, rejection_message(reason or ""))
        self._events.emit(
            OFFER_REJECTED,
            {
                "pending_entry_id": entry.entry_id,
                "channel_id": entry.channel_id,
                "sender_key": entry.sender_key,
                "reason": reason,
                "fragment_refs": list(entry.fragment_refs),
            },
        )
        self._metrics.increment(VALIDATION_REJECTED)
        logger.info(
            "validation_rejected",
            extra={
                "entry_id": entry.entry_id,
                "channel_id": entry.channel_id,
                "reason": reason,
            },
        )
        return ProcessResult(PROCESS_OUTCOME.REJECTED, entry.entry_id, reason=reason)

    def _release_for_retry(
        self, entry: PendingEntry, claim_token: str, error_code: str
    ) -> ProcessResult:
        retry_at = self._clock() + retry_delay(self._config, entry.attempts + 1)
        try:
            released = self._store.release_claim(
                entry.entry_id,
                claim_token=claim_token,
                retry_not_before=retry_at,
                count_attempt=True,
            )
        except PendingStoreInvariantError as exc:
            self._report_invariant(exc, entry.entry_id)
            return ProcessResult(
                PROCESS_OUTCOME.FAILED, entry.entry_id, error_code="invariant_violation"
            )
        except PendingStoreError:
            logger.error(
                "validation_release_failed",
                extra={"entry_id": entry.entry_id, "error_code": error_code},
                exc_info=True,
            )
            return ProcessResult(
                PROCESS_OUTCOME.CLAIM_EXPIRED, entry.entry_id, error_code=error_code
            )
        if released is None:
            logger.warning(
                "validation_release_claim_lost",
                extra={"entry_id": entry.entry_id, "error_code": error_code},
            )
            return ProcessResult(
                PROCESS_OUTCOME.CLAIM_EXPIRED, entry.entry_id, error_code=error_code
            )

        self._metrics.increment(VALIDATION_RELEASED)
        logger.info(
            "validation_released_for_retry",
            extra={
                "entry_id": entry.entry_id,
                "open_entry_id": released.entry_id,
                "attempts": entry.attempts + 1,
                "retry_not_before": retry_at.isoformat(),
                "error_code": error_code,
            },
        )
        return ProcessResult(
            PROCESS_OUTCOME.RELEASED, entry.entry_id, error_code=error_code
        )

    # ------------------------------------------------------------------
    # Claim-timeout recovery
    # ------------------------------------------------------------------
    def recover_claim(self, entry: PendingEntry) -> str:
        """Resolve one claim that outlived ``claim_timeout``.

        A claim whose draft already exists finished committing and only the
        retire was lost, so the entry is retired. A holder that recorded its
        commit intent less than ``claim_timeout`` ago may still be writing the
        draft, so the entry is left alone until that intent expires. Otherwise
        the claim is released for another attempt. Every write is conditioned
        on the stale claim token, so a slow validator and recovery cannot both
        win.
        """

        now = self._clock()
        stale_token = entry.claim_token or ""
        existing = self._drafts.find_by_pending_entry(entry.entry_id)
        if existing is not None:
            retired = self._store.retire(entry.entry_id, claim_token=stale_token)
            action = RECOVERY_ACTION.RETIRED if retired else RECOVERY_ACTION.LOST
        elif entry.is_commit_in_flight(now, self.claim_timeout):
            logger.info(
                "validation_stale_claim_commit_in_flight",
                extra={"entry_id": entry.entry_id, "committing_at": entry.committing_at},
            )
            return RECOVERY_ACTION.DEFERRED
        else:
            try:
                released = self._store.release_claim(
                    entry.entry_id,
                    claim_token=stale_token,
                    retry_not_before=now
                    + retry_delay(self._config, entry.attempts + 1),
                    count_attempt=True,
                    committing_before=now - self.claim_timeout,
                )
            except PendingStoreInvariantError as exc:
                self._report_invariant(exc, entry.entry_id)
                return RECOVERY_ACTION.LOST
            action = RECOVERY_ACTION.RELEASED if released else RECOVERY_ACTION.LOST

        if action != RECOVERY_ACTION.LOST:
            self._metrics.increment(CLAIMS_RECOVERED)
        logger.warning(
            "validation_stale_claim_recovered",
            extra={
                "entry_id": entry.entry_id,
                "claimed_at": entry.claimed_at,
                "action": action,
                "draft_id": existing.draft_id if existing else None,
            },
        )
        return action

    def _report_invariant(self, exc: PendingStoreInvariantError, entry_id: str) -> None:
        self._metrics.increment(INVARIANT_VIOLATIONS)
        logger.error(
            "pipeline_invariant_violation",
            extra={
                "entry_id": entry_id,
                "sender_key": exc.sender_key,
                "channel_id": exc.channel_id,
                "error": str(exc),
            },
        )
