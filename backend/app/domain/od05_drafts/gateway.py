"""OD-05 draft record sinks.

Creation is idempotent on ``pending_entry_id``: a second create for the same
entry returns the stored draft instead of inserting another one, so a
validator retrying after a partial commit never produces two offers.
"""

from __future__ import annotations

import threading
from datetime import timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy import Table, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...infra.db import get_engine
from ...infra.db.schema import draft_offers
from ...infra.events import DRAFT_CREATED, EventEmitter, get_event_emitter
from ...infra.logging import get_logger
from .models import DraftRecord

__all__ = [
    "DraftRecordSink",
    "DraftSinkError",
    "InMemoryDraftRecordSink",
    "PostgresDraftRecordSink",
    "build_draft_record_sink",
]

logger = get_logger(__name__)


class DraftSinkError(RuntimeError):
    """Raised when a draft cannot be stored or read back."""


class DraftRecordSink(Protocol):  # pragma: no cover
    """Accepts structured offers for human review."""

    def create_draft(self, draft: DraftRecord) -> DraftRecord: ...

    def find_by_pending_entry(self, pending_entry_id: str) -> Optional[DraftRecord]: ...


class InMemoryDraftRecordSink(DraftRecordSink):
    """Draft store used for local development and tests."""

    def __init__(self, *, events: Optional[EventEmitter] = None) -> None:
        self._drafts: Dict[str, DraftRecord] = {}
        self._lock = threading.Lock()
        self._events = events or get_event_emitter()

    def create_draft(self, draft: DraftRecord) -> DraftRecord:
        with self._lock:
            existing = self._drafts.get(draft.pending_entry_id)
            if existing is not None:
                return existing
            self._drafts[draft.pending_entry_id] = draft
        self._events.emit(DRAFT_CREATED, draft.to_event_payload())
        return draft

    def find_by_pending_entry(self, pending_entry_id: str) -> Optional[DraftRecord]:
        with self._lock:
            return self._drafts.get(pending_entry_id)

    def all_drafts(self) -> list[DraftRecord]:
        with self._lock:
            return list(self._drafts.values())


class PostgresDraftRecordSink(DraftRecordSink):
    """SQLAlchemy-backed sink writing to the ``draft_offers`` table."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        table: Optional[Table] = None,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self._engine = engine or get_engine()
        self._drafts = table if table is not None else draft_offers
        self._events = events or get_event_emitter()

    def create_draft(self, draft: DraftRecord) -> DraftRecord:
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(self._drafts).values(**_draft_to_row(draft)))
        except IntegrityError:
            existing = self.find_by_pending_entry(draft.pending_entry_id)
            if existing is None:
                raise
            logger.info(
                "draft_already_exists",
                extra={
                    "pending_entry_id": draft.pending_entry_id,
                    "draft_id": existing.draft_id,
                },
            )
            return existing
        except SQLAlchemyError as exc:
            raise DraftSinkError(
                f"draft for {draft.pending_entry_id} could not be stored: {exc}"
            ) from exc
        self._events.emit(DRAFT_CREATED, draft.to_event_payload())
        return draft

    def find_by_pending_entry(self, pending_entry_id: str) -> Optional[DraftRecord]:
        stmt = select(self._drafts).where(
            self._drafts.c.pending_entry_id == pending_entry_id
        )
        try:
            with self._engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise DraftSinkError(
                f"draft lookup for {pending_entry_id} failed: {exc}"
            ) from exc
        return _row_to_draft(row) if row is not None else None


def build_draft_record_sink(
    *,
    prefer_postgres: bool = True,
    fallback_to_memory: bool = False,
) -> DraftRecordSink:
    """Factory that returns the desired draft sink implementation."""

    if prefer_postgres:
        try:
            return PostgresDraftRecordSink()
        except Exception:
            if not fallback_to_memory:
                raise
            logger.warning("postgres_draft_sink_unavailable_falling_back", exc_info=True)
    return InMemoryDraftRecordSink()


def _draft_to_row(draft: DraftRecord) -> Dict[str, Any]:
    return {
        "draft_id": draft.draft_id,
        "pending_entry_id": draft.pending_entry_id,
        "channel_id": draft.channel_id,
        "sender_key": draft.sender_key,
        "item_name": draft.item_name,
        "price": draft.price,
        "unit": draft.unit,
        "description": draft.description,
        "category": draft.category,
        "media_ref": draft.media_ref,
        "fragment_refs": list(draft.fragment_refs),
        "source_text": draft.source_text,
        "status": draft.status,
        "classifier_model": draft.classifier_model,
        "expires_at": draft.expires_at,
        "created_at": draft.created_at,
    }


def _row_to_draft(row: Mapping[str, Any]) -> DraftRecord:
    expires_at = row["expires_at"]
    created_at = row["created_at"]
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return DraftRecord(
        draft_id=row["draft_id"],
        pending_entry_id=row["pending_entry_id"],
        channel_id=row["channel_id"],
        sender_key=row["sender_key"],
        item_name=row["item_name"],
        price=Decimal(str(row["price"])),
        unit=row.get("unit"),
        description=row.get("description"),
        category=row.get("category"),
        media_ref=row.get("media_ref"),
        fragment_refs=tuple(row.get("fragment_refs") or ()),
        source_text=row.get("source_text"),
        classifier_model=row.get("classifier_model"),
        status=row.get("status") or "draft",
        expires_at=expires_at,
        created_at=created_at,
    )
