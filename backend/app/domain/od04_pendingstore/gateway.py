"""OD-04 pending-entry store implementations.

Every per-key mutation is a conditional write: admits are guarded by a
version check plus the partial unique index on open entries, and every write
by a claim holder is guarded by its ``claim_token``. No process-local mutex
is relied on for cross-process exclusion.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import Table, delete, false, insert, or_, select, true, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...infra.db import get_engine
from ...infra.db.schema import pending_entries
from ...infra.logging import get_logger
from .models import Fragment, PendingEntry
from .states import ADMIT_OUTCOME, CLAIM_STATUS

__all__ = [
    "AdmitResult",
    "ClaimAttempt",
    "InMemoryPendingStoreGateway",
    "PendingStoreError",
    "PendingStoreGateway",
    "PendingStoreInvariantError",
    "PostgresPendingStoreGateway",
    "build_pending_store_gateway",
]

logger = get_logger(__name__)

_ADMIT_MAX_ATTEMPTS = 5


class PendingStoreError(RuntimeError):
    """Raised when the store cannot complete an operation (transient)."""


class PendingStoreInvariantError(PendingStoreError):
    """Raised when stored state violates a pending-entry invariant."""

    def __init__(self, message: str, *, sender_key: str, channel_id: str) -> None:
        super().__init__(message)
        self.sender_key = sender_key
        self.channel_id = channel_id


class _ConcurrentUpdate(Exception):
    """Internal signal that a conditional write lost a race; admit retries."""


@dataclass(frozen=True)
class AdmitResult:
    """Entry state after an admit and what the admit did to it."""

    outcome: str
    entry: PendingEntry

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == ADMIT_OUTCOME.DUPLICATE


@dataclass(frozen=True)
class ClaimAttempt:
    """Result of a compare-and-set claim."""

    status: str
    entry: Optional[PendingEntry] = None

    @property
    def won(self) -> bool:
        return self.status == CLAIM_STATUS.CLAIMED


class PendingStoreGateway(Protocol):  # pragma: no cover
    """Durable keyed record of in-progress message assemblies."""

    def admit_fragment(self, fragment: Fragment, *, now: datetime) -> AdmitResult: ...

    def get_entry(self, entry_id: str) -> Optional[PendingEntry]: ...

    def try_claim(
        self,
        entry_id: str,
        *,
        claim_token: str,
        now: datetime,
        quiet_window: timedelta,
    ) -> ClaimAttempt: ...

    def mark_committing(
        self,
        entry_id: str,
        *,
        claim_token: str,
        now: datetime,
        claim_timeout: timedelta,
    ) -> Optional[PendingEntry]: ...

    def release_claim(
        self,
        entry_id: str,
        *,
        claim_token: str,
        retry_not_before: Optional[datetime] = None,
        count_attempt: bool = False,
        committing_before: Optional[datetime] = None,
    ) -> Optional[PendingEntry]: ...

    def retire(self, entry_id: str, *, claim_token: str) -> bool: ...

    def list_ready(
        self, *, now: datetime, quiet_window: timedelta, limit: int = 100
    ) -> List[PendingEntry]: ...

    def list_stale_claims(
        self, *, now: datetime, claim_timeout: timedelta, limit: int = 100
    ) -> List[PendingEntry]: ...


class InMemoryPendingStoreGateway(PendingStoreGateway):
    """Single-process store used for local development and tests.

    The lock stands in for the row-level atomicity the SQL store gets from the
    database; the method contracts are identical.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PendingEntry] = {}
        self._lock = threading.Lock()

    def admit_fragment(self, fragment: Fragment, *, now: datetime) -> AdmitResult:
        with self._lock:
            same_key = [
                entry for entry in self._entries.values() if entry.key == fragment.key
            ]
            current = _single_open_entry(
                same_key, fragment.sender_key, fragment.channel_id
            )
            seen = next(
                (entry for entry in same_key if entry.has_seen(fragment.dedup_token)),
                None,
            )
            if seen is not None:
                return AdmitResult(ADMIT_OUTCOME.DUPLICATE, seen)
            if current is None:
                created = PendingEntry.new(fragment, timestamp=now)
                self._entries[created.entry_id] = created
                return AdmitResult(ADMIT_OUTCOME.CREATED, created)
            merged = current.with_fragment(fragment, timestamp=now)
            self._entries[merged.entry_id] = merged
            return AdmitResult(ADMIT_OUTCOME.MERGED, merged)

    def get_entry(self, entry_id: str) -> Optional[PendingEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def try_claim(
        self,
        entry_id: str,
        *,
        claim_token: str,
        now: datetime,
        quiet_window: timedelta,
    ) -> ClaimAttempt:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.claimed:
                return ClaimAttempt(CLAIM_STATUS.ALREADY_CLAIMED, entry)
            if not entry.is_ready(now, quiet_window):
                return ClaimAttempt(CLAIM_STATUS.NOT_READY, entry)
            claimed = entry.with_claim(claim_token, timestamp=now)
            self._entries[entry_id] = claimed
            return ClaimAttempt(CLAIM_STATUS.CLAIMED, claimed)

    def mark_committing(
        self,
        entry_id: str,
        *,
        claim_token: str,
        now: datetime,
        claim_timeout: timedelta,
    ) -> Optional[PendingEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            if (
                entry is None
                or entry.claim_token != claim_token
                or entry.committing_at is not None
                or entry.is_claim_stale(now, claim_timeout)
            ):
                return None
            marked = entry.with_commit_intent(timestamp=now)
            self._entries[entry_id] = marked
            return marked

    def release_claim(
        self,
        entry_id: str,
        *,
        claim_token: str,
        retry_not_before: Optional[datetime] = None,
        count_attempt: bool = False,
        committing_before: Optional[datetime] = None,
    ) -> Optional[PendingEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or not entry.claimed or entry.claim_token != claim_token:
                return None
            if (
                committing_before is not None
                and entry.committing_at is not None
                and entry.committing_at > committing_before
            ):
                return None
            open_entry = _single_open_entry(
                [other for other in self._entries.values() if other.key == entry.key],
                entry.sender_key,
                entry.channel_id,
            )
            if open_entry is not None:
                absorbed = open_entry.absorb(entry)
                self._entries[absorbed.entry_id] = absorbed
                del self._entries[entry_id]
                return absorbed
            released = entry.released(
                retry_not_before=retry_not_before, count_attempt=count_attempt
            )
            self._entries[entry_id] = released
            return released

    def retire(self, entry_id: str, *, claim_token: str) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.claim_token != claim_token:
                return False
            del self._entries[entry_id]
            return True

    def list_ready(
        self, *, now: datetime, quiet_window: timedelta, limit: int = 100
    ) -> List[PendingEntry]:
        with self._lock:
            ready = [
                entry
                for entry in self._entries.values()
                if entry.is_ready(now, quiet_window)
            ]
        ready.sort(key=lambda entry: entry.last_updated_at)
        return ready[:limit]

    def list_stale_claims(
        self, *, now: datetime, claim_timeout: timedelta, limit: int = 100
    ) -> List[PendingEntry]:
        with self._lock:
            stale = [
                entry
                for entry in self._entries.values()
                if entry.is_claim_stale(now, claim_timeout)
            ]
        stale.sort(key=lambda entry: entry.claimed_at or entry.last_updated_at)
        return stale[:limit]

    def all_entries(self) -> List[PendingEntry]:
        with self._lock:
            return list(self._entries.values())


class PostgresPendingStoreGateway(PendingStoreGateway):
    """SQLAlchemy-backed store persisting entries to PostgreSQL."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        table: Optional[Table] = None,
    ) -> None:
        self._engine = engine or get_engine()
        self._entries = table if table is not None else pending_entries

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def admit_fragment(self, fragment: Fragment, *, now: datetime) -> AdmitResult:
        for attempt in range(1, _ADMIT_MAX_ATTEMPTS + 1):
            try:
                with self._engine.begin() as conn:
                    return self._admit_once(conn, fragment, now)
            except (IntegrityError, _ConcurrentUpdate):
                logger.info(
                    "pending_admit_conflict_retry",
                    extra={
                        "sender_key": fragment.sender_key,
                        "channel_id": fragment.channel_id,
                        "attempt": attempt,
                    },
                )
            except SQLAlchemyError as exc:
                raise PendingStoreError(f"admit failed: {exc}") from exc
        raise PendingStoreError(
            f"admit for {fragment.sender_key}/{fragment.channel_id} kept conflicting"
        )

    def _admit_once(
        self, conn: Connection, fragment: Fragment, now: datetime
    ) -> AdmitResult:
        c = self._entries.c
        rows = (
            conn.execute(
                select(self._entries)
                .where(
                    c.sender_key == fragment.sender_key,
                    c.channel_id == fragment.channel_id,
                )
                .with_for_update()
            )
            .mappings()
            .all()
        )
        same_key = [_row_to_entry(row) for row in rows]
        current = _single_open_entry(
            same_key, fragment.sender_key, fragment.channel_id
        )
        seen = next(
            (entry for entry in same_key if entry.has_seen(fragment.dedup_token)),
            None,
        )
        if seen is not None:
            return AdmitResult(ADMIT_OUTCOME.DUPLICATE, seen)

        if current is None:
            created = PendingEntry.new(fragment, timestamp=now)
            conn.execute(insert(self._entries).values(**_entry_to_row(created)))
            return AdmitResult(ADMIT_OUTCOME.CREATED, created)

        merged = current.with_fragment(fragment, timestamp=now)
        result = conn.execute(
            update(self._entries)
            .where(
                c.entry_id == current.entry_id,
                c.version == current.version,
                c.claimed == false(),
            )
            .values(
                text_fragment=merged.text_fragment,
                media_ref=merged.media_ref,
                dedup_token=merged.dedup_token,
                fragment_refs=list(merged.fragment_refs),
                last_updated_at=merged.last_updated_at,
                version=merged.version,
            )
        )
        if result.rowcount != 1:
            raise _ConcurrentUpdate()
        return AdmitResult(ADMIT_OUTCOME.MERGED, merged)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_entry(self, entry_id: str) -> Optional[PendingEntry]:
        with self._engine.begin() as conn:
            row = self._fetch_row(conn, entry_id)
        return _row_to_entry(row) if row is not None else None

    def list_ready(
        self, *, now: datetime, quiet_window: timedelta, limit: int = 100
    ) -> List[PendingEntry]:
        c = self._entries.c
        stmt = (
            select(self._entries)
            .where(*self._ready_conditions(now, quiet_window))
            .order_by(c.last_updated_at.asc())
            .limit(max(limit, 1))
        )
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_entry(row) for row in rows]

    def list_stale_claims(
        self, *, now: datetime, claim_timeout: timedelta, limit: int = 100
    ) -> List[PendingEntry]:
        c = self._entries.c
        stmt = (
            select(self._entries)
            .where(c.claimed == true(), c.claimed_at <= now - claim_timeout)
            .order_by(c.claimed_at.asc())
            .limit(max(limit, 1))
        )
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Claim lifecycle
    # ------------------------------------------------------------------
    def try_claim(
        self,
        entry_id: str,
        *,
        claim_token: str,
        now: datetime,
        quiet_window: timedelta,
    ) -> ClaimAttempt:
        c = self._entries.c
        stmt = (
            update(self._entries)
            .where(c.entry_id == entry_id, *self._ready_conditions(now, quiet_window))
            .values(claimed=True, claim_token=claim_token, claimed_at=now)
        )
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
                row = self._fetch_row(conn, entry_id)
        except SQLAlchemyError as exc:
            raise PendingStoreError(f"claim failed for {entry_id}: {exc}") from exc
        entry = _row_to_entry(row) if row is not None else None
        if result.rowcount == 1:
            return ClaimAttempt(CLAIM_STATUS.CLAIMED, entry)
        if entry is None or entry.claimed:
            return ClaimAttempt(CLAIM_STATUS.ALREADY_CLAIMED, entry)
        return ClaimAttempt(CLAIM_STATUS.NOT_READY, entry)

    def mark_committing(
        self,
        entry_id: str,
        *,
        claim_token: str,
        now: datetime,
        claim_timeout: timedelta,
    ) -> Optional[PendingEntry]:
        c = self._entries.c
        stmt = (
            update(self._entries)
            .where(
                c.entry_id == entry_id,
                c.claimed == true(),
                c.claim_token == claim_token,
                c.committing_at.is_(None),
                c.claimed_at > now - claim_timeout,
            )
            .values(committing_at=now)
        )
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
                row = self._fetch_row(conn, entry_id) if result.rowcount == 1 else None
        except SQLAlchemyError as exc:
            raise PendingStoreError(
                f"commit intent failed for {entry_id}: {exc}"
            ) from exc
        return _row_to_entry(row) if row is not None else None

    def release_claim(
        self,
        entry_id: str,
        *,
        claim_token: str,
        retry_not_before: Optional[datetime] = None,
        count_attempt: bool = False,
        committing_before: Optional[datetime] = None,
    ) -> Optional[PendingEntry]:
        try:
            with self._engine.begin() as conn:
                return self._release_once(
                    conn,
                    entry_id,
                    claim_token=claim_token,
                    retry_not_before=retry_not_before,
                    count_attempt=count_attempt,
                    committing_before=committing_before,
                )
        except SQLAlchemyError as exc:
            raise PendingStoreError(f"release failed for {entry_id}: {exc}") from exc

    def _release_once(
        self,
        conn: Connection,
        entry_id: str,
        *,
        claim_token: str,
        retry_not_before: Optional[datetime],
        count_attempt: bool,
        committing_before: Optional[datetime],
    ) -> Optional[PendingEntry]:
        c = self._entries.c
        conditions = [
            c.entry_id == entry_id,
            c.claimed == true(),
            c.claim_token == claim_token,
        ]
        if committing_before is not None:
            conditions.append(
                or_(c.committing_at.is_(None), c.committing_at <= committing_before)
            )
        row = (
            conn.execute(
                select(self._entries).where(*conditions).with_for_update()
            )
            .mappings()
            .first()
        )
        if row is None:
            return None
        held = _row_to_entry(row)
        open_rows = (
            conn.execute(
                select(self._entries)
                .where(
                    c.sender_key == held.sender_key,
                    c.channel_id == held.channel_id,
                    c.claimed == false(),
                )
                .with_for_update()
            )
            .mappings()
            .all()
        )
        open_entry = _single_open_entry(
            [_row_to_entry(open_row) for open_row in open_rows],
            held.sender_key,
            held.channel_id,
        )
        if open_entry is not None:
            return self._fold_into_open(conn, held, open_entry)

        released = held.released(
            retry_not_before=retry_not_before, count_attempt=count_attempt
        )
        result = conn.execute(
            update(self._entries)
            .where(c.entry_id == entry_id, c.claim_token == claim_token)
            .values(
                claimed=False,
                claim_token=None,
                claimed_at=None,
                committing_at=None,
                attempts=released.attempts,
                retry_not_before=released.retry_not_before,
                version=released.version,
            )
        )
        if result.rowcount != 1:
            return None
        return released

    def _fold_into_open(
        self, conn: Connection, held: PendingEntry, open_entry: PendingEntry
    ) -> Optional[PendingEntry]:
        c = self._entries.c
        absorbed = open_entry.absorb(held)
        result = conn.execute(
            update(self._entries)
            .where(
                c.entry_id == open_entry.entry_id,
                c.version == open_entry.version,
                c.claimed == false(),
            )
            .values(
                text_fragment=absorbed.text_fragment,
                media_ref=absorbed.media_ref,
                fragment_refs=list(absorbed.fragment_refs),
                first_seen_at=absorbed.first_seen_at,
                version=absorbed.version,
            )
        )
        if result.rowcount != 1:
            return None
        conn.execute(
            delete(self._entries).where(
                c.entry_id == held.entry_id, c.claim_token == held.claim_token
            )
        )
        return absorbed

    def retire(self, entry_id: str, *, claim_token: str) -> bool:
        c = self._entries.c
        stmt = delete(self._entries).where(
            c.entry_id == entry_id, c.claim_token == claim_token
        )
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise PendingStoreError(f"retire failed for {entry_id}: {exc}") from exc
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _ready_conditions(self, now: datetime, quiet_window: timedelta) -> tuple:
        c = self._entries.c
        return (
            c.claimed == false(),
            c.last_updated_at <= now - quiet_window,
            or_(c.retry_not_before.is_(None), c.retry_not_before <= now),
        )

    def _fetch_row(self, conn: Connection, entry_id: str) -> Optional[Mapping[str, Any]]:
        stmt = select(self._entries).where(self._entries.c.entry_id == entry_id)
        return conn.execute(stmt).mappings().first()


def build_pending_store_gateway(
    *,
    prefer_postgres: bool = True,
    fallback_to_memory: bool = False,
) -> PendingStoreGateway:
    """Factory that returns the desired pending store implementation."""

    if prefer_postgres:
        try:
            return PostgresPendingStoreGateway()
        except Exception:
            if not fallback_to_memory:
                raise
            logger.warning(
                "postgres_pending_store_unavailable_falling_back",
                exc_info=True,
            )
    return InMemoryPendingStoreGateway()


def _single_open_entry(
    same_key: List[PendingEntry], sender_key: str, channel_id: str
) -> Optional[PendingEntry]:
    open_entries = [entry for entry in same_key if not entry.claimed]
    if len(open_entries) > 1:
        raise PendingStoreInvariantError(
            f"{len(open_entries)} open entries for one key",
            sender_key=sender_key,
            channel_id=channel_id,
        )
    return open_entries[0] if open_entries else None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _entry_to_row(entry: PendingEntry) -> Dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "sender_key": entry.sender_key,
        "channel_id": entry.channel_id,
        "text_fragment": entry.text_fragment,
        "media_ref": entry.media_ref,
        "dedup_token": entry.dedup_token,
        "fragment_refs": list(entry.fragment_refs),
        "first_seen_at": entry.first_seen_at,
        "last_updated_at": entry.last_updated_at,
        "claimed": entry.claimed,
        "claim_token": entry.claim_token,
        "claimed_at": entry.claimed_at,
        "attempts": entry.attempts,
        "retry_not_before": entry.retry_not_before,
        "version": entry.version,
        "committing_at": entry.committing_at,
    }


def _row_to_entry(row: Mapping[str, Any]) -> PendingEntry:
    return PendingEntry(
        entry_id=row["entry_id"],
        sender_key=row["sender_key"],
        channel_id=row["channel_id"],
        text_fragment=row.get("text_fragment"),
        media_ref=row.get("media_ref"),
        dedup_token=row["dedup_token"],
        fragment_refs=tuple(row.get("fragment_refs") or ()),
        first_seen_at=_as_utc(row["first_seen_at"]),
        last_updated_at=_as_utc(row["last_updated_at"]),
        claimed=bool(row.get("claimed")),
        claim_token=row.get("claim_token"),
        claimed_at=_as_utc(row.get("claimed_at")),
        attempts=int(row.get("attempts") or 0),
        retry_not_before=_as_utc(row.get("retry_not_before")),
        version=int(row.get("version") or 1),
        committing_at=_as_utc(row.get("committing_at")),
    )
