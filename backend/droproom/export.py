"""ZIP bundling of a room's visible timeline."""

from __future__ import annotations

import io
import json
import re
import zipfile
from typing import Any

from sqlalchemy.orm import Session

from . import content, models
from .errors import BlobNotFound
from .schemas import ContentType
from .storage import BlobStore

# purpose: package the visible timeline and its payloads for download
# inputs: live room code readable under its access mode, blob store
# outputs: zip bytes with a manifest describing every entry
# status: pilot


def _safe_name(base: str | None, fallback: str) -> str:
    sanitized = re.sub(r"[^A-Za-z0-9_.-]", "_", base or "")
    return sanitized or fallback


def build_room_archive(db: Session, store: BlobStore, room_code: str) -> bytes:
    """Return zipped timeline bytes; blobs deleted mid-export are skipped and noted."""

    items = content.list_visible(db, room_code)
    db.rollback()

    buffer = io.BytesIO()
    manifest: list[dict[str, Any]] = []
    counters = {ContentType.TEXT: 0, ContentType.CODE: 0}
    with zipfile.ZipFile(file=buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for index, item in enumerate(items, start=1):
            payload = item.payload
            entry: dict[str, Any] = {
                "id": item.id,
                "type": payload.type,
                "created_at": models.as_utc(item.created_at).isoformat(),
                "version": item.version,
            }
            if payload.type in ContentType.INLINE:
                counters[payload.type] += 1
                path = f"{payload.type}-{counters[payload.type]}.txt"
                archive.writestr(path, payload.body or "")
                entry["path"] = path
            else:
                path = f"files/{index:03d}-{_safe_name(payload.filename, f'file-{item.id}')}"
                try:
                    archive.writestr(path, store.get(payload.blob_key))
                except BlobNotFound:
                    entry["missing"] = True
                else:
                    entry["path"] = path
                entry["filename"] = payload.filename
                entry["mime_type"] = payload.mime_type
                entry["byte_size"] = payload.byte_size
            manifest.append(entry)
        archive.writestr(
            "manifest.json",
            json.dumps({"room": room_code, "items": manifest}, indent=2, default=str),
        )
    return buffer.getvalue()
