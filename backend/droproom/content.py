"""Content store: append-only item revisions with blob-first commit ordering."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, rooms, schemas
from .access import OperationKind, ensure_permitted, evaluate
from .config import get_settings
from .database import commit_or_raise, translate_db_errors
from .errors import (
    InvalidRequest,
    ItemNotFound,
    PayloadTooLarge,
    RoomFull,
    RoomNotFound,
    StorageFailure,
)
from .schemas import ContentType
from .storage import BlobStore, build_blob_key

# purpose: persist room timelines so every past state stays reconstructable until the room dies
# inputs: live room code, classified content type, inline body or file bytes, optional clock override
# outputs: ContentItemOut snapshots ordered by (created_at, id)
# invariants: metadata never references a blob that was not written first
# status: pilot

_State = tuple[models.ContentItem, models.ContentRevision]


def _now(now: datetime | None) -> datetime:
    return models.as_utc(now) if now is not None else models.utcnow()


def _to_out(item: models.ContentItem, revision: models.ContentRevision) -> schemas.ContentItemOut:
    meta = dict(item.meta or {})
    if item.content_type == ContentType.TEXT:
        payload: Any = schemas.TextPayload(body=revision.body)
    elif item.content_type == ContentType.CODE:
        payload = schemas.CodePayload(body=revision.body, language=meta.get("language"))
    else:
        blob_fields = {
            "blob_key": item.blob_key,
            "filename": item.filename,
            "mime_type": item.mime_type,
            "byte_size": item.byte_size or 0,
        }
        if item.content_type == ContentType.IMAGE:
            payload = schemas.ImagePayload(**blob_fields)
        elif item.content_type == ContentType.PDF:
            payload = schemas.PdfPayload(page_count=meta.get("page_count"), **blob_fields)
        else:
            payload = schemas.FileBlobPayload(**blob_fields)
    return schemas.ContentItemOut(
        id=item.id,
        room_code=item.room_code,
        created_at=item.created_at,
        updated_at=revision.recorded_at,
        version=revision.version,
        is_deleted=revision.is_deleted,
        payload=payload,
        metadata=meta,
    )


def _to_receipt(item: models.ContentItem, revision: models.ContentRevision) -> schemas.ItemReceipt:
    return schemas.ItemReceipt(
        id=item.id,
        room_code=item.room_code,
        updated_at=revision.recorded_at,
        version=revision.version,
        is_deleted=revision.is_deleted,
    )


def _readable(room: models.Room) -> bool:
    return evaluate(room.access_mode, OperationKind.READ)


def _sort_key(state: _State):
    item, _revision = state
    return (models.as_utc(item.created_at), item.id)


def _states(db: Session, room_code: str, at: datetime | None = None) -> dict[str, _State]:
    """Latest revision per item, optionally as of ``at`` (greatest sequence recorded at or before it)."""

    query = (
        db.query(models.ContentItem, models.ContentRevision)
        .join(models.ContentRevision, models.ContentRevision.item_id == models.ContentItem.id)
        .filter(models.ContentItem.room_code == room_code)
    )
    if at is not None:
        query = query.filter(models.ContentRevision.recorded_at <= at)
    states: dict[str, _State] = {}
    for item, revision in query.order_by(models.ContentRevision.id).all():
        states[item.id] = (item, revision)
    return states


def _visible(states: dict[str, _State]) -> list[_State]:
    return sorted((state for state in states.values() if not state[1].is_deleted), key=_sort_key)


def _live_room(db: Session, room_code: str, operation: OperationKind, now: datetime) -> models.Room:
    room = rooms.get_room(db, room_code, now=now)
    ensure_permitted(room.access_mode, operation)
    return room


def _latest_revision(db: Session, item_id: str) -> models.ContentRevision | None:
    return (
        db.query(models.ContentRevision)
        .filter(models.ContentRevision.item_id == item_id)
        .order_by(models.ContentRevision.id.desc())
        .first()
    )


def _load_item(
    db: Session,
    item_id: str,
    room_code: str | None,
    operation: OperationKind,
    now: datetime,
) -> tuple[models.ContentItem, models.ContentRevision, models.Room]:
    item = db.get(models.ContentItem, item_id, populate_existing=True)
    if item is None or (room_code is not None and item.room_code != room_code):
        raise ItemNotFound(f"Item {item_id} not found")
    room = _live_room(db, item.room_code, operation, now)
    revision = _latest_revision(db, item_id)
    if revision is None:
        raise ItemNotFound(f"Item {item_id} not found")
    return item, revision, room


def _append_revision(
    db: Session,
    item: models.ContentItem,
    latest: models.ContentRevision,
    *,
    is_deleted: bool,
    body: str | None,
    recorded_at: datetime,
) -> models.ContentRevision:
    revision = models.ContentRevision(
        item_id=item.id,
        room_code=item.room_code,
        version=latest.version + 1,
        is_deleted=is_deleted,
        body=body,
        recorded_at=recorded_at,
    )
    db.add(revision)
    return revision


def _commit_revisions(db: Session) -> None:
    try:
        commit_or_raise(db)
    except IntegrityError as exc:
        # (item_id, version) is unique: a concurrent writer appended first.
        raise StorageFailure("Item changed concurrently; retry") from exc


@translate_db_errors
def count_visible(db: Session, room_code: str) -> int:
    return len(_visible(_states(db, room_code)))


@translate_db_errors
def put(
    db: Session,
    store: BlobStore,
    room_code: str,
    *,
    content_type: str,
    body: str | None = None,
    data: bytes | None = None,
    filename: str | None = None,
    mime_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> schemas.ContentItemOut:
    """Store a new item. File payloads are written to ``store`` before any metadata row exists."""

    settings = get_settings()
    created_at = _now(now)
    if content_type not in ContentType.ALL:
        raise InvalidRequest(f"Unknown content type {content_type!r}")
    if content_type in ContentType.INLINE:
        if not body:
            raise InvalidRequest("Text items require a body")
        if len(body) > settings.max_text_length:
            raise PayloadTooLarge(f"Text exceeds {settings.max_text_length} characters")
    else:
        if data is None:
            raise InvalidRequest("File items require a payload")
        if len(data) > settings.max_file_size:
            raise PayloadTooLarge(f"File exceeds {settings.max_file_size} bytes")

    _live_room(db, room_code, OperationKind.WRITE, created_at)
    if count_visible(db, room_code) >= settings.max_items_per_room:
        raise RoomFull(f"Room {room_code} holds {settings.max_items_per_room} items")

    item = models.ContentItem(
        id=models.new_item_id(),
        room_code=room_code,
        content_type=content_type,
        created_at=created_at,
        meta=dict(metadata or {}),
    )
    if content_type in ContentType.FILES:
        item.blob_key = build_blob_key(room_code, filename or "upload.bin")
        item.filename = filename
        item.mime_type = mime_type or "application/octet-stream"
        item.byte_size = len(data)
        # End the read transaction before blob I/O; a failure here leaves no metadata behind.
        db.rollback()
        store.put(item.blob_key, data, item.mime_type)

    revision = models.ContentRevision(
        item_id=item.id,
        room_code=room_code,
        version=1,
        is_deleted=False,
        body=body if content_type in ContentType.INLINE else None,
        recorded_at=created_at,
    )
    db.add(item)
    db.add(revision)
    try:
        commit_or_raise(db)
    except IntegrityError as exc:
        # The room was purged between the liveness check and the insert;
        # a blob written above is left for orphan reconciliation.
        raise RoomNotFound(f"Room {room_code} not found or expired") from exc
    return _to_out(item, revision)


@translate_db_errors
def get(
    db: Session,
    item_id: str,
    *,
    room_code: str | None = None,
    include_deleted: bool = False,
    now: datetime | None = None,
) -> schemas.ContentItemOut:
    item, revision, _room = _load_item(db, item_id, room_code, OperationKind.READ, _now(now))
    if revision.is_deleted and not include_deleted:
        raise ItemNotFound(f"Item {item_id} not found")
    return _to_out(item, revision)


@translate_db_errors
def read_blob(
    db: Session,
    store: BlobStore,
    item_id: str,
    *,
    room_code: str | None = None,
    now: datetime | None = None,
) -> tuple[schemas.ContentItemOut, bytes]:
    """Return a visible file item with its payload bytes."""

    item, revision, _room = _load_item(db, item_id, room_code, OperationKind.READ, _now(now))
    if revision.is_deleted or not item.blob_key:
        raise ItemNotFound(f"Item {item_id} has no downloadable payload")
    snapshot = _to_out(item, revision)
    blob_key = item.blob_key
    db.rollback()
    return snapshot, store.get(blob_key)


@translate_db_errors
def list_visible(db: Session, room_code: str, *, now: datetime | None = None) -> list[schemas.ContentItemOut]:
    """Non-deleted items at their latest version, ascending by (created_at, id)."""

    _live_room(db, room_code, OperationKind.READ, _now(now))
    return [_to_out(item, revision) for item, revision in _visible(_states(db, room_code))]


@translate_db_errors
def soft_delete(
    db: Session,
    item_id: str,
    *,
    room_code: str | None = None,
    now: datetime | None = None,
) -> schemas.ContentItemOut | schemas.ItemReceipt:
    """Append a deleted revision; repeating the call is a no-op.

    Holders without read access get a content-free receipt.
    """

    recorded_at = _now(now)
    item, latest, room = _load_item(db, item_id, room_code, OperationKind.WRITE, recorded_at)
    present = _to_out if _readable(room) else _to_receipt
    if latest.is_deleted:
        return present(item, latest)
    revision = _append_revision(db, item, latest, is_deleted=True, body=latest.body, recorded_at=recorded_at)
    _commit_revisions(db)
    return present(item, revision)


@translate_db_errors
def edit(
    db: Session,
    item_id: str,
    body: str,
    *,
    room_code: str | None = None,
    now: datetime | None = None,
) -> schemas.ContentItemOut | schemas.ItemReceipt:
    recorded_at = _now(now)
    item, latest, room = _load_item(db, item_id, room_code, OperationKind.WRITE, recorded_at)
    present = _to_out if _readable(room) else _to_receipt
    if latest.is_deleted:
        raise ItemNotFound(f"Item {item_id} not found")
    if item.content_type not in ContentType.INLINE:
        raise InvalidRequest("Only text and code items can be edited")
    settings = get_settings()
    if not body:
        raise InvalidRequest("Text items require a body")
    if len(body) > settings.max_text_length:
        raise PayloadTooLarge(f"Text exceeds {settings.max_text_length} characters")
    revision = _append_revision(db, item, latest, is_deleted=False, body=body, recorded_at=recorded_at)
    _commit_revisions(db)
    return present(item, revision)


@translate_db_errors
def history_as_of(
    db: Session,
    room_code: str,
    at: datetime,
    *,
    now: datetime | None = None,
) -> list[schemas.ContentItemOut]:
    """Visible timeline as it stood at ``at``."""

    _live_room(db, room_code, OperationKind.READ, _now(now))
    states = _states(db, room_code, at=models.as_utc(at))
    return [_to_out(item, revision) for item, revision in _visible(states)]


@translate_db_errors
def history(db: Session, room_code: str, *, now: datetime | None = None) -> list[schemas.RevisionOut]:
    """Every revision event in the room in sequence order."""

    _live_room(db, room_code, OperationKind.READ, _now(now))
    revisions = (
        db.query(models.ContentRevision)
        .filter(models.ContentRevision.room_code == room_code)
        .order_by(models.ContentRevision.id)
        .all()
    )
    return [
        schemas.RevisionOut(
            sequence=revision.id,
            item_id=revision.item_id,
            version=revision.version,
            is_deleted=revision.is_deleted,
            recorded_at=revision.recorded_at,
        )
        for revision in revisions
    ]


@translate_db_errors
def restore(
    db: Session,
    room_code: str,
    at: datetime,
    *,
    now: datetime | None = None,
) -> schemas.RestoreOut:
    """Make the visible timeline match its state at ``at`` by appending new revisions."""

    recorded_at = _now(now)
    room = _live_room(db, room_code, OperationKind.WRITE, recorded_at)
    readable = _readable(room)
    past = _states(db, room_code, at=models.as_utc(at))
    current = _states(db, room_code)

    changed: list[str] = []
    for item_id, (item, latest) in current.items():
        historical = past.get(item_id)
        want_visible = historical is not None and not historical[1].is_deleted
        is_visible = not latest.is_deleted
        if want_visible:
            target_body = historical[1].body
            if is_visible and latest.body == target_body:
                continue
            _append_revision(db, item, latest, is_deleted=False, body=target_body, recorded_at=recorded_at)
        else:
            if not is_visible:
                continue
            _append_revision(db, item, latest, is_deleted=True, body=latest.body, recorded_at=recorded_at)
        changed.append(item_id)

    if changed:
        _commit_revisions(db)
    items = None
    if readable:
        items = [_to_out(item, revision) for item, revision in _visible(_states(db, room_code))]
    return schemas.RestoreOut(restored_at=recorded_at, changed_item_ids=sorted(changed), items=items)


@translate_db_errors
def referenced_blob_keys(db: Session) -> set[str]:
    """Blob keys referenced by any item, deleted or not."""

    return {
        key
        for (key,) in db.query(models.ContentItem.blob_key).filter(models.ContentItem.blob_key.isnot(None)).all()
    }
