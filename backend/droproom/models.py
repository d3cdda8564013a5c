import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
)
from sqlalchemy.orm import relationship

from .access import AccessMode
from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_item_id() -> str:
    return uuid.uuid4().hex


class Room(Base):
    __tablename__ = "rooms"
    code = Column(String(32), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    # null while pinned
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    is_pinned = Column(Boolean, nullable=False, default=False)
    access_mode = Column(String(16), nullable=False, default=AccessMode.FULL_ACCESS.value)

    items = relationship(
        "ContentItem",
        back_populates="room",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def is_expired(self, now: datetime) -> bool:
        if self.is_pinned or self.expires_at is None:
            return False
        return as_utc(self.expires_at) < as_utc(now)


class ContentItem(Base):
    """Identity and payload location of one timeline entry; state lives in revisions."""

    __tablename__ = "content_items"
    id = Column(String(32), primary_key=True, default=new_item_id)
    room_code = Column(String(32), ForeignKey("rooms.code", ondelete="CASCADE"), nullable=False)
    content_type = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    blob_key = Column(String(512), nullable=True, unique=True)
    filename = Column(String(255), nullable=True)
    mime_type = Column(String(255), nullable=True)
    byte_size = Column(Integer, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    room = relationship("Room", back_populates="items")
    revisions = relationship(
        "ContentRevision",
        back_populates="item",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ContentRevision.id",
    )

    __table_args__ = (sa.Index("ix_content_items_room_created", "room_code", "created_at"),)


class ContentRevision(Base):
    """Append-only state log; ``id`` doubles as the global revision sequence."""

    __tablename__ = "content_revisions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String(32), ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False)
    room_code = Column(String(32), ForeignKey("rooms.code", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    body = Column(Text, nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    item = relationship("ContentItem", back_populates="revisions")

    __table_args__ = (
        sa.UniqueConstraint("item_id", "version", name="uq_content_revision_version"),
        sa.Index("ix_content_revisions_room_recorded", "room_code", "recorded_at"),
        {"sqlite_autoincrement": True},
    )


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
