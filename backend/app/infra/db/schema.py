"""SQLAlchemy Core table definitions shared by gateways and migrations."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

__all__ = [
    "metadata",
    "pending_entries",
    "draft_offers",
    "channels",
    "channel_senders",
]

metadata = sa.MetaData()

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")

pending_entries = sa.Table(
    "pending_entries",
    metadata,
    sa.Column("entry_id", sa.String(length=36), primary_key=True),
    sa.Column("sender_key", sa.String(length=128), nullable=False),
    sa.Column("channel_id", sa.String(length=128), nullable=False),
    sa.Column("text_fragment", sa.Text(), nullable=True),
    sa.Column("media_ref", sa.Text(), nullable=True),
    sa.Column("dedup_token", sa.String(length=255), nullable=False),
    sa.Column("fragment_refs", _JSON, nullable=False),
    sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("claimed", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("claim_token", sa.String(length=36), nullable=True),
    sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("retry_not_before", sa.DateTime(timezone=True), nullable=True),
    sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    sa.Column("committing_at", sa.DateTime(timezone=True), nullable=True),
)

# One open entry per key; claimed rows are exempt while validation is in flight.
sa.Index(
    "uq_pending_entries_open_key",
    pending_entries.c.sender_key,
    pending_entries.c.channel_id,
    unique=True,
    postgresql_where=pending_entries.c.claimed == sa.false(),
    sqlite_where=pending_entries.c.claimed == sa.false(),
)
sa.Index("ix_pending_entries_last_updated", pending_entries.c.last_updated_at)
sa.Index("ix_pending_entries_claimed_at", pending_entries.c.claimed_at)

draft_offers = sa.Table(
    "draft_offers",
    metadata,
    sa.Column("draft_id", sa.String(length=36), primary_key=True),
    sa.Column("pending_entry_id", sa.String(length=36), nullable=False, unique=True),
    sa.Column("channel_id", sa.String(length=128), nullable=False),
    sa.Column("sender_key", sa.String(length=128), nullable=False),
    sa.Column("item_name", sa.Text(), nullable=False),
    sa.Column("price", sa.Numeric(10, 2), nullable=False),
    sa.Column("unit", sa.String(length=64), nullable=True),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("category", sa.String(length=128), nullable=True),
    sa.Column("media_ref", sa.Text(), nullable=True),
    sa.Column("fragment_refs", _JSON, nullable=False),
    sa.Column("source_text", sa.Text(), nullable=True),
    sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
    sa.Column("classifier_model", sa.String(length=128), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)
sa.Index("ix_draft_offers_channel", draft_offers.c.channel_id)

channels = sa.Table(
    "channels",
    metadata,
    sa.Column("channel_id", sa.String(length=128), primary_key=True),
    sa.Column("display_name", sa.Text(), nullable=False),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
)

channel_senders = sa.Table(
    "channel_senders",
    metadata,
    sa.Column("sender_key", sa.String(length=128), primary_key=True),
    sa.Column(
        "channel_id",
        sa.String(length=128),
        sa.ForeignKey("channels.channel_id", ondelete="CASCADE"),
        nullable=False,
    ),
)
