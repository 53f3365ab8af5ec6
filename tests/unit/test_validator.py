"""Tests for OD-03 validator/committer."""

# Coverage: OD-03

from __future__ import annotations

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from backend.app.config.loader import ConsolidationConfig
from backend.app.domain.od01_intake import InboundMessage, rejection_message
from backend.app.domain.od03_validation import service as validation_service
from backend.app.domain.od03_validation import (
    PROCESS_OUTCOME,
    RECOVERY_ACTION,
    retry_delay,
)
from backend.app.domain.od04_pendingstore.models import Fragment, PendingEntry
from backend.app.domain.od05_drafts.gateway import InMemoryDraftRecordSink
from backend.app.domain.od05_drafts.models import DraftRecord
from backend.app.infra.classifier import (
    REJECTION_REASON,
    ClassificationResult,
    ClassifierGatewayError,
    StubOfferClassifier,
)
from backend.app.infra.events import DRAFT_CREATED, OFFER_REJECTED
from backend.app.infra.metrics import (
    CLAIMS_RECOVERED,
    DRAFTS_COMMITTED,
    INVARIANT_VIOLATIONS,
    VALIDATION_REJECTED,
    VALIDATION_RELEASED,
)
from tests.helpers.clock import T0
from tests.helpers.logging import RecordingLogger, find_logs
from tests.helpers.pipeline import CHANNEL_ID, SENDER, build_harness

pytestmark = [pytest.mark.od03]


class FlakyClassifier:
    """Fails ``failures`` times with a retryable error, then defers to the stub."""

    def __init__(self, failures=1, *, retryable=True):
        self.failures = failures
        self.retryable = retryable
        self.calls = 0
        self._stub = StubOfferClassifier()

    def classify(self, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise ClassifierGatewayError(
                "upstream unavailable",
                code="classifier_unavailable",
                retryable=self.retryable,
            )
        return self._stub.classify(request)


class HookedClassifier:
    """Runs ``hook`` mid-classification to simulate a slow validator."""

    def __init__(self, hook, verdict=None):
        self.hook = hook
        self.verdict = verdict
        self._stub = StubOfferClassifier()

    def classify(self, request):
        self.hook()
        if self.verdict is not None:
            return self.verdict
        return self._stub.classify(request)


def _admit(harness, message_id, text=None, media_ref=None):
    return harness.intake.receive(
        InboundMessage(
            sender_key=SENDER, message_id=message_id, text=text, media_ref=media_ref
        )
    ).entry


def test_garbage_message_is_rejected_with_reason_specific_reply():
    harness = build_harness()
    entry = _admit(harness, "m1", text="hey")
    harness.clock.at(15)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.REJECTED
    assert result.reason == REJECTION_REASON.MISSING_BOTH
    assert result.is_terminal
    assert harness.store.get_entry(entry.entry_id) is None
    assert harness.drafts.all_drafts() == []
    assert [(n.destination, n.message_text) for n in harness.notifier.outbox] == [
        (SENDER, rejection_message(REJECTION_REASON.MISSING_BOTH))
    ]
    assert [topic for topic, _ in harness.events.events] == [OFFER_REJECTED]
    assert harness.metrics.counters[VALIDATION_REJECTED] == 1


def test_merged_offer_commits_one_draft_and_retires_the_entry():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Tomaten")
    harness.clock.at(3)
    _admit(harness, "m2", text="2,99/kg")
    harness.clock.at(4)
    _admit(harness, "m3", media_ref="img-1")
    harness.clock.at(19)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.COMMITTED
    draft = result.draft
    assert draft.item_name == "Tomaten"
    assert draft.price == Decimal("2.99")
    assert draft.unit == "kg"
    assert draft.media_ref == "img-1"
    assert draft.fragment_refs == ("m1", "m2", "m3")
    assert draft.expires_at == T0 + timedelta(seconds=19, days=7)
    assert harness.store.get_entry(entry.entry_id) is None
    assert harness.notifier.outbox == []
    assert [topic for topic, _ in harness.events.events] == [DRAFT_CREATED]
    assert harness.metrics.counters[DRAFTS_COMMITTED] == 1


def test_entry_inside_quiet_window_is_not_claimed():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(14)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.SKIPPED_NOT_READY
    assert not harness.store.get_entry(entry.entry_id).claimed


def test_missing_entry_is_reported_as_already_claimed():
    harness = build_harness()

    result = harness.validator.try_claim_and_process("gone")

    assert result.outcome == PROCESS_OUTCOME.SKIPPED_ALREADY_CLAIMED


def test_concurrent_validators_commit_exactly_once():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Gurken 0,79")
    harness.clock.at(15)
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def _run():
        barrier.wait()
        result = harness.validator.try_claim_and_process(entry.entry_id)
        with results_lock:
            results.append(result.outcome)

    threads = [threading.Thread(target=_run) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(PROCESS_OUTCOME.COMMITTED) == 1
    assert results.count(PROCESS_OUTCOME.SKIPPED_ALREADY_CLAIMED) == workers - 1
    assert len(harness.drafts.all_drafts()) == 1
    assert harness.notifier.outbox == []


def test_classifier_failure_releases_with_backoff_then_succeeds():
    classifier = FlakyClassifier(failures=1)
    harness = build_harness(classifier=classifier)
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)

    first = harness.validator.try_claim_and_process(entry.entry_id)

    assert first.outcome == PROCESS_OUTCOME.RELEASED
    assert first.error_code == "classifier_unavailable"
    released = harness.store.get_entry(entry.entry_id)
    assert not released.claimed
    assert released.attempts == 1
    assert released.retry_not_before == T0 + timedelta(seconds=20)
    assert harness.metrics.counters[VALIDATION_RELEASED] == 1

    harness.clock.at(19)
    gated = harness.validator.try_claim_and_process(entry.entry_id)
    assert gated.outcome == PROCESS_OUTCOME.SKIPPED_NOT_READY

    harness.clock.at(20)
    second = harness.validator.try_claim_and_process(entry.entry_id)
    assert second.outcome == PROCESS_OUTCOME.COMMITTED
    assert classifier.calls == 2


def test_retry_delay_doubles_and_caps():
    config = ConsolidationConfig(retry_backoff_seconds=5, retry_backoff_max_seconds=30)

    assert retry_delay(config, 1) == timedelta(seconds=5)
    assert retry_delay(config, 2) == timedelta(seconds=10)
    assert retry_delay(config, 3) == timedelta(seconds=20)
    assert retry_delay(config, 4) == timedelta(seconds=30)
    assert retry_delay(config, 10) == timedelta(seconds=30)


def test_claim_that_outlives_timeout_does_not_commit():
    harness = build_harness()
    classifier = HookedClassifier(lambda: harness.clock.advance(60))
    harness.validator._classifier = classifier
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.CLAIM_EXPIRED
    assert harness.drafts.all_drafts() == []
    assert harness.store.get_entry(entry.entry_id).claimed


def test_rejection_after_claim_was_recovered_sends_nothing():
    harness = build_harness()
    entry = _admit(harness, "m1", text="hey")

    def _recover_mid_flight():
        stale = harness.store.get_entry(entry.entry_id)
        harness.store.release_claim(entry.entry_id, claim_token=stale.claim_token)

    harness.validator._classifier = HookedClassifier(
        _recover_mid_flight,
        verdict=ClassificationResult.rejected(
            REJECTION_REASON.MISSING_BOTH, model_used="test"
        ),
    )
    harness.clock.at(15)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.CLAIM_EXPIRED
    assert harness.notifier.outbox == []
    assert harness.store.get_entry(entry.entry_id) is not None


def test_recover_claim_retires_when_draft_exists():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)
    claimed = harness.store.try_claim(
        entry.entry_id,
        claim_token="stale",
        now=harness.clock(),
        quiet_window=harness.validator.quiet_window,
    ).entry
    harness.drafts.create_draft(
        DraftRecord.from_entry(
            claimed, item_name="Kiwi", price=Decimal("0.39"), validity_days=7
        )
    )
    harness.clock.at(80)

    action = harness.validator.recover_claim(claimed)

    assert action == RECOVERY_ACTION.RETIRED
    assert harness.store.get_entry(entry.entry_id) is None
    assert harness.metrics.counters[CLAIMS_RECOVERED] == 1


def test_recover_claim_releases_when_no_draft_exists():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)
    claimed = harness.store.try_claim(
        entry.entry_id,
        claim_token="stale",
        now=harness.clock(),
        quiet_window=harness.validator.quiet_window,
    ).entry
    harness.clock.at(80)

    action = harness.validator.recover_claim(claimed)

    reopened = harness.store.get_entry(entry.entry_id)
    assert action == RECOVERY_ACTION.RELEASED
    assert not reopened.claimed
    assert reopened.attempts == 1
    assert reopened.retry_not_before == T0 + timedelta(seconds=85)


def test_recover_claim_after_validator_finished_is_lost():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)
    claimed = harness.store.try_claim(
        entry.entry_id,
        claim_token="stale",
        now=harness.clock(),
        quiet_window=harness.validator.quiet_window,
    ).entry
    harness.store.retire(entry.entry_id, claim_token="stale")

    action = harness.validator.recover_claim(claimed)

    assert action == RECOVERY_ACTION.LOST
    assert harness.metrics.counters[CLAIMS_RECOVERED] == 0


def test_release_into_broken_key_is_reported_as_invariant_violation():
    harness = build_harness(classifier=FlakyClassifier(failures=1))
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    for token in ("r1", "r2"):
        rogue = PendingEntry.new(
            Fragment(sender_key=SENDER, channel_id=CHANNEL_ID, dedup_token=token),
            timestamp=T0,
        )
        harness.store._entries[rogue.entry_id] = rogue
    harness.clock.at(15)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.FAILED
    assert result.error_code == "invariant_violation"
    assert harness.metrics.counters[INVARIANT_VIOLATIONS] == 1


def test_non_retryable_classifier_error_is_logged_at_error_level(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(validation_service, "logger", recorder)
    harness = build_harness(classifier=FlakyClassifier(failures=1, retryable=False))
    entry = _admit(harness, "m1", "Kiwi 0,39")
    harness.clock.at(15)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.RELEASED
    (failure,) = find_logs(recorder.records, message="validation_classifier_failed")
    assert failure["level"] == "error"
    assert failure["extra"]["retryable"] is False
    assert recorder.messages("info")[-1] == "validation_released_for_retry"


class SlowDraftSink(InMemoryDraftRecordSink):
    """Runs ``before_insert`` once, just before the draft row is written."""

    def __init__(self):
        super().__init__()
        self.before_insert = None

    def create_draft(self, draft):
        hook, self.before_insert = self.before_insert, None
        if hook is not None:
            hook()
        return super().create_draft(draft)


def test_recovery_does_not_reopen_an_entry_whose_draft_is_being_written():
    drafts = SlowDraftSink()
    harness = build_harness(drafts=drafts)
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.validator._classifier = HookedClassifier(lambda: harness.clock.at(74.9))
    recovered = {}

    def _sweep_recovers_before_insert():
        harness.clock.at(76)
        _admit(harness, "m2", text="frisch")
        recovered.update(harness.scheduler.recover_stale_claims())

    drafts.before_insert = _sweep_recovers_before_insert
    harness.clock.at(15)

    first = harness.validator.try_claim_and_process(entry.entry_id)

    assert first.outcome == PROCESS_OUTCOME.COMMITTED
    assert recovered == {RECOVERY_ACTION.DEFERRED: 1}
    assert harness.store.get_entry(entry.entry_id) is None
    assert harness.metrics.counters[CLAIMS_RECOVERED] == 0

    harness.validator._classifier = harness.classifier
    harness.clock.at(91)
    harness.scheduler.sweep_once()

    refs = [ref for draft in harness.drafts.all_drafts() for ref in draft.fragment_refs]
    assert refs == ["m1"]


def test_recovery_releases_once_the_commit_intent_has_expired():
    harness = build_harness()
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)
    harness.store.try_claim(
        entry.entry_id,
        claim_token="stale",
        now=harness.clock(),
        quiet_window=harness.validator.quiet_window,
    )
    committing = harness.store.mark_committing(
        entry.entry_id,
        claim_token="stale",
        now=T0 + timedelta(seconds=20),
        claim_timeout=harness.validator.claim_timeout,
    )
    harness.clock.at(79)
    assert harness.validator.recover_claim(committing) == RECOVERY_ACTION.DEFERRED

    harness.clock.at(80)
    action = harness.validator.recover_claim(committing)

    reopened = harness.store.get_entry(entry.entry_id)
    assert action == RECOVERY_ACTION.RELEASED
    assert not reopened.claimed
    assert reopened.committing_at is None


class ExplodingClassifier:
    def classify(self, request):
        raise ValueError("unexpected payload shape")


def test_unexpected_classifier_error_releases_the_claim(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(validation_service, "logger", recorder)
    harness = build_harness(classifier=ExplodingClassifier())
    entry = _admit(harness, "m1", text="Kiwi 0,39")
    harness.clock.at(15)

    result = harness.validator.try_claim_and_process(entry.entry_id)

    assert result.outcome == PROCESS_OUTCOME.RELEASED
    assert result.error_code == "classifier_error"
    released = harness.store.get_entry(entry.entry_id)
    assert not released.claimed
    assert released.attempts == 1
    (crash,) = find_logs(recorder.records, message="validation_classifier_crashed")
    assert crash["exc_info"]
