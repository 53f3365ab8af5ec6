"""Add OD-04 commit intent timestamp to pending entries.

Revision ID: 20261019_add_commit_intent_column
Revises: 20261018_consolidation
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_add_commit_intent_column"
down_revision = "20261018_consolidation"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "pending_entries",
        sa.Column("committing_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("pending_entries", "committing_at")
