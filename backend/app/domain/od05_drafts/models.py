"""OD-05 draft offer records handed to downstream review."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from ..od04_pendingstore.models import PendingEntry, utcnow

__all__ = ["DRAFT_STATUS", "DraftRecord"]

DRAFT_STATUS = "draft"


@dataclass(frozen=True)
class DraftRecord:
    """Structured result of one successfully validated pending entry."""

    draft_id: str
    pending_entry_id: str
    channel_id: str
    sender_key: str
    item_name: str
    price: Decimal
    expires_at: datetime
    created_at: datetime
    unit: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    media_ref: Optional[str] = None
    fragment_refs: Tuple[str, ...] = field(default_factory=tuple)
    source_text: Optional[str] = None
    classifier_model: Optional[str] = None
    status: str = DRAFT_STATUS

    @classmethod
    def from_entry(
        cls,
        entry: PendingEntry,
        *,
        item_name: str,
        price: Decimal,
        validity_days: int,
        unit: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        classifier_model: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "DraftRecord":
        """Build a draft carrying the entry's provenance."""

        ts = timestamp or utcnow()
        return cls(
            draft_id=str(uuid4()),
            pending_entry_id=entry.entry_id,
            channel_id=entry.channel_id,
            sender_key=entry.sender_key,
            item_name=item_name,
            price=price,
            unit=unit,
            description=description,
            category=category,
            media_ref=entry.media_ref,
            fragment_refs=tuple(entry.fragment_refs),
            source_text=entry.text_fragment,
            classifier_model=classifier_model,
            expires_at=ts + timedelta(days=validity_days),
            created_at=ts,
        )

    def to_event_payload(self) -> Dict[str, Any]:
        return {
            "draft_id": self.draft_id,
            "pending_entry_id": self.pending_entry_id,
            "channel_id": self.channel_id,
            "item_name": self.item_name,
            "price": str(self.price),
            "unit": self.unit,
            "media_ref": self.media_ref,
            "fragment_refs": list(self.fragment_refs),
            "expires_at": self.expires_at.isoformat(),
        }
