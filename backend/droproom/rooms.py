"""Room registry: allocation, policy mutations and idempotent deletion."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import codes, models, schemas
from .access import AccessMode
from .config import get_settings
from .database import commit_or_raise, translate_db_errors
from .errors import AllocationFailure, InvalidRequest, RoomNotFound
from .storage import BlobStore, room_prefix

# purpose: own room-level invariants (unique codes, expiry, pin, access mode)
# inputs: SQLAlchemy session, blob store for purges, optional clock override
# outputs: Room rows; purges leave no content rows or blobs behind
# status: pilot

MAX_ALLOCATION_ATTEMPTS = 5


def _now(now: datetime | None) -> datetime:
    return models.as_utc(now) if now is not None else models.utcnow()


@translate_db_errors
def load_room(db: Session, code: str) -> models.Room | None:
    """Fetch the stored row regardless of expiry, bypassing the identity map cache."""

    return db.get(models.Room, code, populate_existing=True)


@translate_db_errors
def create_room(
    db: Session,
    payload: schemas.RoomCreate | None = None,
    *,
    now: datetime | None = None,
    generator: Callable[[int], str] = codes.generate,
    max_attempts: int = MAX_ALLOCATION_ATTEMPTS,
) -> models.Room:
    """Allocate a fresh code and persist a room with the default or requested expiry."""

    payload = payload or schemas.RoomCreate()
    settings = get_settings()
    ttl = settings.resolve_ttl(payload.ttl_hours)
    created_at = _now(now)

    for _attempt in range(max_attempts):
        code = generator(settings.room_code_length)
        if not codes.is_well_formed(code, settings.room_code_length):
            raise ValueError(f"Code generator produced a malformed code {code!r}")
        if load_room(db, code) is not None:
            continue
        room = models.Room(
            code=code,
            created_at=created_at,
            expires_at=created_at + ttl,
            is_pinned=False,
            access_mode=AccessMode(payload.access_mode).value,
        )
        db.add(room)
        try:
            commit_or_raise(db)
        except IntegrityError:
            # Lost an insert race for the same code; draw again.
            continue
        db.refresh(room)
        return room
    raise AllocationFailure(f"No unused room code after {max_attempts} attempts")


@translate_db_errors
def get_room(db: Session, code: str, *, now: datetime | None = None) -> models.Room:
    """Return the live room for ``code`` or raise RoomNotFound."""

    settings = get_settings()
    if not codes.is_well_formed(code, settings.room_code_length):
        raise InvalidRequest("Malformed room code")
    room = load_room(db, code)
    if room is None or room.is_expired(_now(now)):
        raise RoomNotFound(f"Room {code} not found or expired")
    return room


@translate_db_errors
def set_access_mode(db: Session, code: str, mode: AccessMode | str, *, now: datetime | None = None) -> models.Room:
    room = get_room(db, code, now=now)
    room.access_mode = AccessMode(mode).value
    commit_or_raise(db)
    db.refresh(room)
    return room


@translate_db_errors
def set_expiry(db: Session, code: str, when: datetime, *, now: datetime | None = None) -> models.Room:
    """Move the expiry instant. On a pinned room the value is advisory only."""

    room = get_room(db, code, now=now)
    room.expires_at = models.as_utc(when)
    commit_or_raise(db)
    db.refresh(room)
    return room


@translate_db_errors
def pin(db: Session, code: str, *, now: datetime | None = None) -> models.Room:
    room = get_room(db, code, now=now)
    room.is_pinned = True
    room.expires_at = None
    commit_or_raise(db)
    db.refresh(room)
    return room


@translate_db_errors
def unpin(db: Session, code: str, *, ttl_hours: int | None = None, now: datetime | None = None) -> models.Room:
    """Return a pinned room to the reaper's reach with a fresh expiry window."""

    current = _now(now)
    room = get_room(db, code, now=current)
    room.is_pinned = False
    room.expires_at = current + get_settings().resolve_ttl(ttl_hours)
    commit_or_raise(db)
    db.refresh(room)
    return room


@translate_db_errors
def list_expired_codes(
    db: Session,
    *,
    now: datetime | None = None,
    limit: int = 100,
    after: str | None = None,
) -> list[str]:
    """Return up to ``limit`` unpinned, expired room codes ordered by code, strictly after ``after``."""

    query = (
        db.query(models.Room.code)
        .filter(models.Room.is_pinned.is_(False))
        .filter(models.Room.expires_at.isnot(None))
        .filter(models.Room.expires_at < _now(now))
    )
    if after is not None:
        query = query.filter(models.Room.code > after)
    return [code for (code,) in query.order_by(models.Room.code).limit(limit).all()]


@translate_db_errors
def delete_room(db: Session, store: BlobStore, code: str) -> bool:
    """Remove a room, its content rows and every blob under its prefix.

    Safe to repeat and safe to race: each step tolerates work already done by
    another caller. Returns whether a registry row was removed by this call.
    """

    if not codes.is_well_formed(code, get_settings().room_code_length):
        raise InvalidRequest("Malformed room code")
    referenced = [
        key
        for (key,) in db.query(models.ContentItem.blob_key)
        .filter(models.ContentItem.room_code == code)
        .filter(models.ContentItem.blob_key.isnot(None))
        .all()
    ]
    # End the read transaction before touching blob storage.
    db.rollback()
    for key in referenced:
        store.delete(key)
    store.delete_prefix(room_prefix(code))

    db.query(models.ContentRevision).filter(models.ContentRevision.room_code == code).delete(
        synchronize_session=False
    )
    db.query(models.ContentItem).filter(models.ContentItem.room_code == code).delete(synchronize_session=False)
    removed = db.query(models.Room).filter(models.Room.code == code).delete(synchronize_session=False)
    commit_or_raise(db)
    db.expire_all()
    return bool(removed)
