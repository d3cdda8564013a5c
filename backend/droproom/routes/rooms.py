import io
import os
from datetime import datetime
from typing import Union
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile, status
from fastapi.responses import StreamingResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from .. import content, export, rooms, schemas
from ..access import OperationKind, evaluate
from ..classify import classify, code_language, pdf_page_count
from ..config import get_settings
from ..database import get_db
from ..schemas import ContentType
from ..storage import BlobStore, get_blob_store

limiter = Limiter(key_func=get_remote_address)
testing = os.getenv("TESTING") == "1"


def rate_limit(limit: str):
    if testing:
        def wrapper(func):
            return func
        return wrapper
    return limiter.limit(limit)


router = APIRouter(prefix="/api/rooms", tags=["rooms"])


def _timeline(db: Session, code: str) -> schemas.RoomTimelineOut:
    room = schemas.RoomOut.model_validate(rooms.get_room(db, code))
    # Drop-only holders still learn the room's settings, never its contents.
    if not evaluate(room.access_mode, OperationKind.READ):
        return schemas.RoomTimelineOut(room=room, items=None)
    return schemas.RoomTimelineOut(room=room, items=content.list_visible(db, code))


@router.post("", response_model=schemas.RoomOut, status_code=status.HTTP_201_CREATED)
@rate_limit("10/minute")
def create_room(
    request: Request,
    payload: schemas.RoomCreate | None = None,
    db: Session = Depends(get_db),
):
    return rooms.create_room(db, payload)


@router.get("/{code}", response_model=schemas.RoomTimelineOut)
def get_room(code: str, db: Session = Depends(get_db)):
    return _timeline(db, code)


@router.patch("/{code}/access-mode", response_model=schemas.RoomOut)
def update_access_mode(code: str, payload: schemas.AccessModeUpdate, db: Session = Depends(get_db)):
    return rooms.set_access_mode(db, code, payload.access_mode)


@router.put("/{code}/expiry", response_model=schemas.RoomOut)
def update_expiry(code: str, payload: schemas.ExpiryUpdate, db: Session = Depends(get_db)):
    return rooms.set_expiry(db, code, payload.expires_at)


@router.post("/{code}/pin", response_model=schemas.RoomOut)
def pin_room(code: str, db: Session = Depends(get_db)):
    return rooms.pin(db, code)


@router.delete("/{code}/pin", response_model=schemas.RoomOut)
def unpin_room(
    code: str,
    ttl_hours: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return rooms.unpin(db, code, ttl_hours=ttl_hours)


@router.delete("/{code}", status_code=status.HTTP_204_NO_CONTENT)
def delete_room(
    code: str,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    rooms.delete_room(db, store, code)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{code}/items", response_model=schemas.ContentItemOut, status_code=status.HTTP_201_CREATED)
@rate_limit("60/minute")
def create_text_item(
    request: Request,
    code: str,
    payload: schemas.TextItemCreate,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    metadata = dict(payload.metadata)
    if payload.type == ContentType.CODE and payload.language:
        metadata["language"] = payload.language
    return content.put(db, store, code, content_type=payload.type, body=payload.body, metadata=metadata)


@router.post("/{code}/items/upload", response_model=schemas.ContentItemOut, status_code=status.HTTP_201_CREATED)
@rate_limit("20/minute")
def upload_item(
    request: Request,
    code: str,
    upload: UploadFile = File(...),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    settings = get_settings()
    # One byte past the limit is enough to reject without buffering the rest.
    data = upload.file.read(settings.max_file_size + 1)
    filename = os.path.basename(upload.filename or "") or "upload.bin"
    mime_type = upload.content_type or "application/octet-stream"
    content_type = classify(mime_type, filename)
    metadata: dict = {"source": "upload"}

    if content_type in ContentType.INLINE:
        try:
            body = data.decode("utf-8")
        except UnicodeDecodeError:
            body = None
        if body and len(body) <= settings.max_text_length:
            metadata["filename"] = filename
            if content_type == ContentType.CODE:
                metadata["language"] = code_language(filename)
            return content.put(db, store, code, content_type=content_type, body=body, metadata=metadata)
        content_type = ContentType.FILE_BLOB
    if content_type == ContentType.PDF:
        metadata["page_count"] = pdf_page_count(data)

    return content.put(
        db,
        store,
        code,
        content_type=content_type,
        data=data,
        filename=filename,
        mime_type=mime_type,
        metadata=metadata,
    )


@router.get("/{code}/items/{item_id}", response_model=schemas.ContentItemOut)
def get_item(code: str, item_id: str, db: Session = Depends(get_db)):
    return content.get(db, item_id, room_code=code)


@router.get("/{code}/items/{item_id}/download")
def download_item(
    code: str,
    item_id: str,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    item, data = content.read_blob(db, store, item_id, room_code=code)
    filename = item.payload.filename or f"{item.id}.bin"
    return StreamingResponse(
        io.BytesIO(data),
        media_type=item.payload.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@router.patch("/{code}/items/{item_id}", response_model=Union[schemas.ContentItemOut, schemas.ItemReceipt])
def edit_item(code: str, item_id: str, payload: schemas.ItemEdit, db: Session = Depends(get_db)):
    return content.edit(db, item_id, payload.body, room_code=code)


@router.delete("/{code}/items/{item_id}", response_model=Union[schemas.ContentItemOut, schemas.ItemReceipt])
def delete_item(code: str, item_id: str, db: Session = Depends(get_db)):
    return content.soft_delete(db, item_id, room_code=code)


@router.get("/{code}/history", response_model=list[schemas.ContentItemOut])
def room_history_as_of(code: str, at: datetime = Query(...), db: Session = Depends(get_db)):
    return content.history_as_of(db, code, at)


@router.get("/{code}/revisions", response_model=list[schemas.RevisionOut])
def room_revisions(code: str, db: Session = Depends(get_db)):
    return content.history(db, code)


@router.post("/{code}/restore", response_model=schemas.RestoreOut)
def restore_room(code: str, payload: schemas.RestoreRequest, db: Session = Depends(get_db)):
    return content.restore(db, code, payload.at)


@router.get("/{code}/export")
def export_room(
    code: str,
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    archive = export.build_room_archive(db, store, code)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="room-{code}.zip"'},
    )
