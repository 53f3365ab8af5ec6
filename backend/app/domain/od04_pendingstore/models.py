"""OD-04 pending-entry data models."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from uuid import uuid4

from .states import ENTRY_STATE, ensure_transition

__all__ = [
    "Fragment",
    "PendingEntry",
    "merge_text",
    "utcnow",
]


def utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def merge_text(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    """Append ``incoming`` after ``existing``; either side may be empty."""

    existing = _clean_text(existing)
    incoming = _clean_text(incoming)
    if existing and incoming:
        return f"{existing}\n{incoming}"
    return existing or incoming


@dataclass(frozen=True)
class Fragment:
    """One inbound message piece from a sender, already authorized."""

    sender_key: str
    channel_id: str
    dedup_token: str
    text: Optional[str] = None
    media_ref: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.sender_key, self.channel_id)

    @property
    def is_empty(self) -> bool:
        return _clean_text(self.text) is None and not self.media_ref


@dataclass(frozen=True)
class PendingEntry:
    """An assembly-in-progress for one ``(sender_key, channel_id)`` pair."""

    entry_id: str
    sender_key: str
    channel_id: str
    text_fragment: Optional[str]
    media_ref: Optional[str]
    dedup_token: str
    fragment_refs: Tuple[str, ...]
    first_seen_at: datetime
    last_updated_at: datetime
    claimed: bool = False
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    attempts: int = 0
    retry_not_before: Optional[datetime] = None
    version: int = 1
    committing_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        fragment: Fragment,
        *,
        timestamp: Optional[datetime] = None,
        entry_id: Optional[str] = None,
    ) -> "PendingEntry":
        ts = timestamp or utcnow()
        return cls(
            entry_id=entry_id or str(uuid4()),
            sender_key=fragment.sender_key,
            channel_id=fragment.channel_id,
            text_fragment=_clean_text(fragment.text),
            media_ref=fragment.media_ref or None,
            dedup_token=fragment.dedup_token,
            fragment_refs=(fragment.dedup_token,),
            first_seen_at=ts,
            last_updated_at=ts,
        )

    @property
    def key(self) -> Tuple[str, str]:
        return (self.sender_key, self.channel_id)

    @property
    def state(self) -> str:
        return ENTRY_STATE.CLAIMED if self.claimed else ENTRY_STATE.OPEN

    def has_seen(self, dedup_token: str) -> bool:
        return dedup_token == self.dedup_token or dedup_token in self.fragment_refs

    def is_quiet(self, now: datetime, quiet_window: timedelta) -> bool:
        return now - self.last_updated_at >= quiet_window

    def is_ready(self, now: datetime, quiet_window: timedelta) -> bool:
        """True when a validator may claim the entry at ``now``."""

        if self.claimed or not self.is_quiet(now, quiet_window):
            return False
        return self.retry_not_before is None or self.retry_not_before <= now

    def ready_at(self, quiet_window: timedelta) -> datetime:
        quiet_at = self.last_updated_at + quiet_window
        if self.retry_not_before and self.retry_not_before > quiet_at:
            return self.retry_not_before
        return quiet_at

    def is_claim_stale(self, now: datetime, claim_timeout: timedelta) -> bool:
        if not self.claimed or self.claimed_at is None:
            return False
        return now - self.claimed_at >= claim_timeout

    def is_commit_in_flight(self, now: datetime, claim_timeout: timedelta) -> bool:
        """True while the claim holder may still be writing the draft record."""

        if self.committing_at is None:
            return False
        return now - self.committing_at < claim_timeout

    def with_fragment(
        self, fragment: Fragment, *, timestamp: Optional[datetime] = None
    ) -> "PendingEntry":
        """Merge a newer fragment: text appends, media is last-one-wins."""

        if self.claimed:
            raise ValueError(f"entry {self.entry_id} is claimed and cannot merge")
        ts = timestamp or utcnow()
        return replace(
            self,
            text_fragment=merge_text(self.text_fragment, fragment.text),
            media_ref=fragment.media_ref or self.media_ref,
            dedup_token=fragment.dedup_token,
            fragment_refs=self.fragment_refs + (fragment.dedup_token,),
            last_updated_at=max(self.last_updated_at, ts),
            version=self.version + 1,
        )

    def with_claim(
        self, claim_token: str, *, timestamp: Optional[datetime] = None
    ) -> "PendingEntry":
        ensure_transition(self.state, ENTRY_STATE.CLAIMED)
        return replace(
            self,
            claimed=True,
            claim_token=claim_token,
            claimed_at=timestamp or utcnow(),
            committing_at=None,
        )

    def with_commit_intent(self, *, timestamp: Optional[datetime] = None) -> "PendingEntry":
        if not self.claimed:
            raise ValueError(f"entry {self.entry_id} is not claimed")
        return replace(self, committing_at=timestamp or utcnow())

    def released(
        self,
        *,
        retry_not_before: Optional[datetime] = None,
        count_attempt: bool = False,
    ) -> "PendingEntry":
        ensure_transition(self.state, ENTRY_STATE.OPEN)
        return replace(
            self,
            claimed=False,
            claim_token=None,
            claimed_at=None,
            committing_at=None,
            attempts=self.attempts + 1 if count_attempt else self.attempts,
            retry_not_before=retry_not_before,
            version=self.version + 1,
        )

    def absorb(self, earlier: "PendingEntry") -> "PendingEntry":
        """Fold an earlier, released entry for the same key into this open one.

        The earlier entry's fragments arrived first, so its text goes first;
        this entry's media is newer and wins when present.
        """

        if earlier.key != self.key:
            raise ValueError("cannot absorb an entry for a different key")
        refs = earlier.fragment_refs + tuple(
            ref for ref in self.fragment_refs if ref not in earlier.fragment_refs
        )
        return replace(
            self,
            text_fragment=merge_text(earlier.text_fragment, self.text_fragment),
            media_ref=self.media_ref or earlier.media_ref,
            fragment_refs=refs,
            first_seen_at=min(self.first_seen_at, earlier.first_seen_at),
            version=self.version + 1,
        )
