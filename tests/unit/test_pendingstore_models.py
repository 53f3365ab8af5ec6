"""Tests for OD-04 pending-entry models and state helpers."""

# Coverage: OD-04

from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.domain.od04_pendingstore.models import Fragment, PendingEntry, merge_text
from backend.app.domain.od04_pendingstore.states import ENTRY_STATE, ensure_transition
from tests.helpers.clock import T0

pytestmark = [pytest.mark.od04]

QUIET = timedelta(seconds=15)


def _fragment(token, text=None, media=None):
    return Fragment(
        sender_key="4915100000000",
        channel_id="demo-market",
        dedup_token=token,
        text=text,
        media_ref=media,
    )


def test_merge_text_joins_non_empty_parts_with_newline():
    assert merge_text("Tomaten", "2,99 €") == "Tomaten\n2,99 €"
    assert merge_text(None, "  2,99 € ") == "2,99 €"
    assert merge_text("Tomaten", "   ") == "Tomaten"
    assert merge_text(None, None) is None


def test_new_entry_seeds_both_timestamps_and_normalizes_blank_text():
    entry = PendingEntry.new(_fragment("m1", text="  ", media="img1"), timestamp=T0)

    assert entry.first_seen_at == entry.last_updated_at == T0
    assert entry.text_fragment is None
    assert entry.media_ref == "img1"
    assert entry.fragment_refs == ("m1",)
    assert entry.state == ENTRY_STATE.OPEN
    assert entry.version == 1


def test_with_fragment_appends_text_and_replaces_media():
    entry = PendingEntry.new(_fragment("m1", text="Tomaten", media="img1"), timestamp=T0)
    later = T0 + timedelta(seconds=5)

    merged = entry.with_fragment(_fragment("m2", text="2,99/kg", media="img2"), timestamp=later)

    assert merged.text_fragment == "Tomaten\n2,99/kg"
    assert merged.media_ref == "img2"
    assert merged.dedup_token == "m2"
    assert merged.fragment_refs == ("m1", "m2")
    assert merged.last_updated_at == later
    assert merged.first_seen_at == T0
    assert merged.version == 2


def test_with_fragment_keeps_media_when_new_fragment_has_none():
    entry = PendingEntry.new(_fragment("m1", media="img1"), timestamp=T0)

    merged = entry.with_fragment(_fragment("m2", text="Gurken 0,79"), timestamp=T0)

    assert merged.media_ref == "img1"


def test_last_updated_at_never_moves_backwards():
    entry = PendingEntry.new(_fragment("m1", text="a"), timestamp=T0 + timedelta(seconds=10))

    merged = entry.with_fragment(_fragment("m2", text="b"), timestamp=T0)

    assert merged.last_updated_at == T0 + timedelta(seconds=10)


def test_claimed_entry_rejects_merges():
    entry = PendingEntry.new(_fragment("m1", text="a"), timestamp=T0).with_claim(
        "token", timestamp=T0 + QUIET
    )

    with pytest.raises(ValueError):
        entry.with_fragment(_fragment("m2", text="b"), timestamp=T0 + QUIET)


def test_readiness_follows_quiet_window_and_retry_gate():
    entry = PendingEntry.new(_fragment("m1", text="a"), timestamp=T0)

    assert not entry.is_ready(T0 + timedelta(seconds=14), QUIET)
    assert entry.is_ready(T0 + QUIET, QUIET)
    assert entry.ready_at(QUIET) == T0 + QUIET

    gated = entry.with_claim("t", timestamp=T0 + QUIET).released(
        retry_not_before=T0 + timedelta(seconds=40), count_attempt=True
    )
    assert gated.attempts == 1
    assert not gated.is_ready(T0 + timedelta(seconds=30), QUIET)
    assert gated.is_ready(T0 + timedelta(seconds=40), QUIET)
    assert gated.ready_at(QUIET) == T0 + timedelta(seconds=40)


def test_claim_staleness_uses_claimed_at():
    claimed = PendingEntry.new(_fragment("m1", text="a"), timestamp=T0).with_claim(
        "t", timestamp=T0 + QUIET
    )
    timeout = timedelta(seconds=60)

    assert not claimed.is_claim_stale(T0 + QUIET + timedelta(seconds=59), timeout)
    assert claimed.is_claim_stale(T0 + QUIET + timeout, timeout)


def test_absorb_puts_earlier_text_first_and_prefers_newer_media():
    earlier = PendingEntry.new(_fragment("m1", text="Äpfel", media="img-old"), timestamp=T0)
    newer = PendingEntry.new(
        _fragment("m3", text="1,49 €"), timestamp=T0 + timedelta(seconds=70)
    )

    folded = newer.absorb(earlier)

    assert folded.entry_id == newer.entry_id
    assert folded.text_fragment == "Äpfel\n1,49 €"
    assert folded.media_ref == "img-old"
    assert folded.fragment_refs == ("m1", "m3")
    assert folded.first_seen_at == T0


def test_state_transitions_only_allow_documented_moves():
    assert ensure_transition(ENTRY_STATE.OPEN, ENTRY_STATE.CLAIMED) == ENTRY_STATE.CLAIMED
    assert ensure_transition(ENTRY_STATE.CLAIMED, ENTRY_STATE.OPEN) == ENTRY_STATE.OPEN
    with pytest.raises(ValueError):
        ensure_transition(ENTRY_STATE.OPEN, ENTRY_STATE.COMMITTED)
    with pytest.raises(ValueError):
        ensure_transition(ENTRY_STATE.COMMITTED, ENTRY_STATE.OPEN)
