"""Create pending entry, draft offer and channel tables.

Revision ID: 20261018_consolidation
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261018_consolidation"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "channels",
        sa.Column("channel_id", sa.String(length=128), primary_key=True),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
    )
    op.create_table(
        "channel_senders",
        sa.Column("sender_key", sa.String(length=128), primary_key=True),
        sa.Column(
            "channel_id",
            sa.String(length=128),
            sa.ForeignKey("channels.channel_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )

    op.create_table(
        "pending_entries",
        sa.Column("entry_id", sa.String(length=36), primary_key=True),
        sa.Column("sender_key", sa.String(length=128), nullable=False),
        sa.Column("channel_id", sa.String(length=128), nullable=False),
        sa.Column("text_fragment", sa.Text(), nullable=True),
        sa.Column("media_ref", sa.Text(), nullable=True),
        sa.Column("dedup_token", sa.String(length=255), nullable=False),
        sa.Column(
            "fragment_refs",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "claimed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("claim_token", sa.String(length=36), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_not_before", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        "uq_pending_entries_open_key",
        "pending_entries",
        ["sender_key", "channel_id"],
        unique=True,
        postgresql_where=sa.text("claimed = false"),
    )
    op.create_index(
        "ix_pending_entries_last_updated", "pending_entries", ["last_updated_at"]
    )
    op.create_index(
        "ix_pending_entries_claimed_at", "pending_entries", ["claimed_at"]
    )

    op.create_table(
        "draft_offers",
        sa.Column("draft_id", sa.String(length=36), primary_key=True),
        sa.Column("pending_entry_id", sa.String(length=36), nullable=False),
        sa.Column("channel_id", sa.String(length=128), nullable=False),
        sa.Column("sender_key", sa.String(length=128), nullable=False),
        sa.Column("item_name", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("unit", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=128), nullable=True),
        sa.Column("media_ref", sa.Text(), nullable=True),
        sa.Column(
            "fragment_refs",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("source_text", sa.Text(), nullable=True),
        sa.Column(
            "status", sa.String(length=32), nullable=False, server_default="draft"
        ),
        sa.Column("classifier_model", sa.String(length=128), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "pending_entry_id", name="uq_draft_offers_pending_entry_id"
        ),
    )
    op.create_index("ix_draft_offers_channel", "draft_offers", ["channel_id"])


def downgrade() -> None:
    op.drop_index("ix_draft_offers_channel", table_name="draft_offers")
    op.drop_table("draft_offers")
    op.drop_index("ix_pending_entries_claimed_at", table_name="pending_entries")
    op.drop_index("ix_pending_entries_last_updated", table_name="pending_entries")
    op.drop_index("uq_pending_entries_open_key", table_name="pending_entries")
    op.drop_table("pending_entries")
    op.drop_table("channel_senders")
    op.drop_table("channels")
