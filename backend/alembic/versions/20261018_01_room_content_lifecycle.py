"""Rooms, content items and the append-only revision log."""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: str | Sequence[str] | None = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rooms",
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("access_mode", sa.String(length=16), nullable=False, server_default="full"),
        sa.PrimaryKeyConstraint("code"),
    )
    op.create_index("ix_rooms_expires_at", "rooms", ["expires_at"])

    op.create_table(
        "content_items",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("room_code", sa.String(length=32), sa.ForeignKey("rooms.code", ondelete="CASCADE"), nullable=False),
        sa.Column("content_type", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("blob_key", sa.String(length=512), nullable=True),
        sa.Column("filename", sa.String(length=255), nullable=True),
        sa.Column("mime_type", sa.String(length=255), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("blob_key"),
    )
    op.create_index("ix_content_items_room_created", "content_items", ["room_code", "created_at"])

    op.create_table(
        "content_revisions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("item_id", sa.String(length=32), sa.ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("room_code", sa.String(length=32), sa.ForeignKey("rooms.code", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("item_id", "version", name="uq_content_revision_version"),
    )
    op.create_index("ix_content_revisions_room_recorded", "content_revisions", ["room_code", "recorded_at"])


def downgrade() -> None:
    op.drop_index("ix_content_revisions_room_recorded", table_name="content_revisions")
    op.drop_table("content_revisions")
    op.drop_index("ix_content_items_room_created", table_name="content_items")
    op.drop_table("content_items")
    op.drop_index("ix_rooms_expires_at", table_name="rooms")
    op.drop_table("rooms")
