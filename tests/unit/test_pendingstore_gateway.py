"""Tests for OD-04 pending store gateways (in-memory and SQL)."""

# Coverage: OD-04

from __future__ import annotations

from datetime import timedelta

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from backend.app.domain.od04_pendingstore.gateway import (
    InMemoryPendingStoreGateway,
    PendingStoreInvariantError,
    PostgresPendingStoreGateway,
)
from backend.app.domain.od04_pendingstore.models import Fragment, PendingEntry
from backend.app.domain.od04_pendingstore.states import ADMIT_OUTCOME, CLAIM_STATUS
from backend.app.infra.db.schema import metadata, pending_entries
from tests.helpers.clock import T0

pytestmark = [pytest.mark.od04]

QUIET = timedelta(seconds=15)
TIMEOUT = timedelta(seconds=60)


def _sql_store():
    engine = sa.create_engine("sqlite+pysqlite:///:memory:", future=True)
    metadata.create_all(engine, tables=[pending_entries])
    return PostgresPendingStoreGateway(engine=engine, table=pending_entries)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryPendingStoreGateway()
    return _sql_store()


def _fragment(token, text=None, media=None, sender="4915100000000"):
    return Fragment(
        sender_key=sender,
        channel_id="demo-market",
        dedup_token=token,
        text=text,
        media_ref=media,
    )


def _at(seconds):
    return T0 + timedelta(seconds=seconds)


def test_admit_creates_then_merges_in_arrival_order(store):
    created = store.admit_fragment(_fragment("m1", text="Tomaten"), now=_at(0))
    merged = store.admit_fragment(_fragment("m2", text="2,99/kg"), now=_at(3))
    media = store.admit_fragment(_fragment("m3", media="img1"), now=_at(4))

    assert created.outcome == ADMIT_OUTCOME.CREATED
    assert merged.outcome == ADMIT_OUTCOME.MERGED
    assert media.outcome == ADMIT_OUTCOME.MERGED
    stored = store.get_entry(created.entry.entry_id)
    assert stored.text_fragment == "Tomaten\n2,99/kg"
    assert stored.media_ref == "img1"
    assert stored.fragment_refs == ("m1", "m2", "m3")
    assert stored.dedup_token == "m3"
    assert stored.first_seen_at == _at(0)
    assert stored.last_updated_at == _at(4)


def test_duplicate_delivery_leaves_state_untouched(store):
    first = store.admit_fragment(_fragment("m1", text="Gurken 0,79"), now=_at(0))
    again = store.admit_fragment(_fragment("m1", text="Gurken 0,79"), now=_at(1))

    assert again.outcome == ADMIT_OUTCOME.DUPLICATE
    assert again.is_duplicate
    stored = store.get_entry(first.entry.entry_id)
    assert stored == first.entry
    assert stored.last_updated_at == _at(0)


def test_redelivery_of_an_earlier_fragment_is_also_a_duplicate(store):
    store.admit_fragment(_fragment("m1", text="a"), now=_at(0))
    store.admit_fragment(_fragment("m2", text="b"), now=_at(1))

    result = store.admit_fragment(_fragment("m1", text="a"), now=_at(2))

    assert result.outcome == ADMIT_OUTCOME.DUPLICATE
    assert store.get_entry(result.entry.entry_id).text_fragment == "a\nb"


def test_keys_are_independent(store):
    a = store.admit_fragment(_fragment("m1", text="a", sender="491"), now=_at(0))
    b = store.admit_fragment(_fragment("m2", text="b", sender="492"), now=_at(0))

    assert a.entry.entry_id != b.entry.entry_id
    assert b.outcome == ADMIT_OUTCOME.CREATED


def test_claim_requires_quiet_window(store):
    entry = store.admit_fragment(_fragment("m1", text="hey"), now=_at(0)).entry

    early = store.try_claim(
        entry.entry_id, claim_token="t1", now=_at(14), quiet_window=QUIET
    )
    on_time = store.try_claim(
        entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET
    )

    assert early.status == CLAIM_STATUS.NOT_READY
    assert on_time.won
    assert on_time.entry.claimed
    assert on_time.entry.claim_token == "t1"
    assert on_time.entry.claimed_at == _at(15)


def test_second_claim_loses(store):
    entry = store.admit_fragment(_fragment("m1", text="hey"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)

    second = store.try_claim(
        entry.entry_id, claim_token="t2", now=_at(16), quiet_window=QUIET
    )

    assert second.status == CLAIM_STATUS.ALREADY_CLAIMED
    assert store.get_entry(entry.entry_id).claim_token == "t1"


def test_claim_of_missing_entry_reports_already_claimed(store):
    attempt = store.try_claim("nope", claim_token="t", now=_at(30), quiet_window=QUIET)

    assert attempt.status == CLAIM_STATUS.ALREADY_CLAIMED
    assert attempt.entry is None


def test_fragment_after_claim_opens_a_new_entry(store):
    entry = store.admit_fragment(_fragment("m1", text="Tomaten"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)

    late = store.admit_fragment(_fragment("m2", text="2,99"), now=_at(16))
    duplicate_of_claimed = store.admit_fragment(_fragment("m1", text="Tomaten"), now=_at(17))

    assert late.outcome == ADMIT_OUTCOME.CREATED
    assert late.entry.entry_id != entry.entry_id
    assert duplicate_of_claimed.is_duplicate
    assert store.get_entry(entry.entry_id).text_fragment == "Tomaten"


def test_retire_is_conditioned_on_claim_token(store):
    entry = store.admit_fragment(_fragment("m1", text="a"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)

    assert store.retire(entry.entry_id, claim_token="other") is False
    assert store.retire(entry.entry_id, claim_token="t1") is True
    assert store.get_entry(entry.entry_id) is None
    assert store.retire(entry.entry_id, claim_token="t1") is False


def test_release_reopens_with_backoff_gate(store):
    entry = store.admit_fragment(_fragment("m1", text="a"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)

    assert store.release_claim(entry.entry_id, claim_token="wrong") is None
    released = store.release_claim(
        entry.entry_id,
        claim_token="t1",
        retry_not_before=_at(25),
        count_attempt=True,
    )

    assert released.entry_id == entry.entry_id
    assert not released.claimed
    assert released.claim_token is None
    assert released.attempts == 1
    assert released.retry_not_before == _at(25)
    stored = store.get_entry(entry.entry_id)
    assert stored.attempts == 1
    assert not stored.claimed
    assert store.list_ready(now=_at(20), quiet_window=QUIET) == []
    assert [e.entry_id for e in store.list_ready(now=_at(25), quiet_window=QUIET)] == [
        entry.entry_id
    ]


def test_release_folds_into_newer_open_entry(store):
    stale = store.admit_fragment(_fragment("m1", text="Äpfel", media="img1"), now=_at(0)).entry
    store.try_claim(stale.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)
    newer = store.admit_fragment(_fragment("m2", text="1,49 €"), now=_at(20)).entry

    folded = store.release_claim(stale.entry_id, claim_token="t1", count_attempt=True)

    assert folded.entry_id == newer.entry_id
    assert folded.text_fragment == "Äpfel\n1,49 €"
    assert folded.media_ref == "img1"
    assert folded.fragment_refs == ("m1", "m2")
    assert store.get_entry(stale.entry_id) is None
    assert store.get_entry(newer.entry_id).text_fragment == "Äpfel\n1,49 €"


def test_list_ready_orders_by_last_update_and_skips_claimed(store):
    first = store.admit_fragment(_fragment("m1", text="a", sender="491"), now=_at(0)).entry
    second = store.admit_fragment(_fragment("m2", text="b", sender="492"), now=_at(2)).entry
    young = store.admit_fragment(_fragment("m3", text="c", sender="493"), now=_at(10)).entry
    store.try_claim(first.entry_id, claim_token="t", now=_at(16), quiet_window=QUIET)

    ready = store.list_ready(now=_at(20), quiet_window=QUIET)

    assert [entry.entry_id for entry in ready] == [second.entry_id]
    assert young.entry_id not in {entry.entry_id for entry in ready}


def test_list_stale_claims_uses_claim_timeout(store):
    entry = store.admit_fragment(_fragment("m1", text="a"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t", now=_at(15), quiet_window=QUIET)

    assert store.list_stale_claims(now=_at(74), claim_timeout=TIMEOUT) == []
    stale = store.list_stale_claims(now=_at(75), claim_timeout=TIMEOUT)

    assert [e.entry_id for e in stale] == [entry.entry_id]
    assert stale[0].claim_token == "t"


def test_commit_intent_requires_the_live_claim(store):
    entry = store.admit_fragment(_fragment("m1", text="a"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)

    assert store.mark_committing(
        entry.entry_id, claim_token="other", now=_at(20), claim_timeout=TIMEOUT
    ) is None
    assert store.mark_committing(
        entry.entry_id, claim_token="t1", now=_at(75), claim_timeout=TIMEOUT
    ) is None
    marked = store.mark_committing(
        entry.entry_id, claim_token="t1", now=_at(74), claim_timeout=TIMEOUT
    )

    assert marked.committing_at == _at(74)
    assert store.get_entry(entry.entry_id).committing_at == _at(74)
    assert store.mark_committing(
        entry.entry_id, claim_token="t1", now=_at(74), claim_timeout=TIMEOUT
    ) is None


def test_release_respects_a_recent_commit_intent(store):
    stale = store.admit_fragment(_fragment("m1", text="Kiwi 0,39"), now=_at(0)).entry
    store.try_claim(stale.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)
    store.mark_committing(
        stale.entry_id, claim_token="t1", now=_at(74), claim_timeout=TIMEOUT
    )
    newer = store.admit_fragment(_fragment("m2", text="frisch"), now=_at(76)).entry

    refused = store.release_claim(
        stale.entry_id, claim_token="t1", committing_before=_at(16)
    )

    assert refused is None
    assert store.get_entry(stale.entry_id).claimed
    assert store.get_entry(newer.entry_id).fragment_refs == ("m2",)

    folded = store.release_claim(
        stale.entry_id, claim_token="t1", committing_before=_at(74)
    )

    assert folded.entry_id == newer.entry_id
    assert folded.fragment_refs == ("m1", "m2")


def test_release_clears_commit_intent(store):
    entry = store.admit_fragment(_fragment("m1", text="a"), now=_at(0)).entry
    store.try_claim(entry.entry_id, claim_token="t1", now=_at(15), quiet_window=QUIET)
    store.mark_committing(
        entry.entry_id, claim_token="t1", now=_at(20), claim_timeout=TIMEOUT
    )

    released = store.release_claim(entry.entry_id, claim_token="t1")

    assert released.committing_at is None
    assert store.get_entry(entry.entry_id).committing_at is None


def test_in_memory_store_flags_two_open_entries_for_one_key():
    store = InMemoryPendingStoreGateway()
    for token in ("m1", "m2"):
        rogue = PendingEntry.new(_fragment(token, text="x"), timestamp=T0)
        store._entries[rogue.entry_id] = rogue

    with pytest.raises(PendingStoreInvariantError) as excinfo:
        store.admit_fragment(_fragment("m3", text="y"), now=_at(1))

    assert excinfo.value.sender_key == "4915100000000"
    assert excinfo.value.channel_id == "demo-market"


def test_sql_partial_unique_index_allows_only_one_open_row_per_key():
    store = _sql_store()
    store.admit_fragment(_fragment("m1", text="a"), now=_at(0))
    rogue = PendingEntry.new(_fragment("m2", text="b"), timestamp=_at(1))

    with pytest.raises(IntegrityError):
        with store._engine.begin() as conn:
            conn.execute(
                sa.insert(pending_entries).values(
                    entry_id=rogue.entry_id,
                    sender_key=rogue.sender_key,
                    channel_id=rogue.channel_id,
                    dedup_token=rogue.dedup_token,
                    fragment_refs=list(rogue.fragment_refs),
                    first_seen_at=rogue.first_seen_at,
                    last_updated_at=rogue.last_updated_at,
                    claimed=False,
                )
            )
