from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from .access import AccessMode


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# SQLite returns naive values; everything stored is UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_utc)]


class ContentType:
    TEXT = "text"
    CODE = "code"
    IMAGE = "image"
    PDF = "pdf"
    FILE_BLOB = "file_blob"

    INLINE = frozenset({TEXT, CODE})
    FILES = frozenset({IMAGE, PDF, FILE_BLOB})
    ALL = INLINE | FILES


class RoomCreate(BaseModel):
    ttl_hours: Optional[int] = Field(
        default=None,
        description="Expiry window; must be one of the deployment's allowed durations",
    )
    access_mode: AccessMode = AccessMode.FULL_ACCESS


class RoomOut(BaseModel):
    code: str
    created_at: UtcDatetime
    expires_at: Optional[UtcDatetime] = None
    is_pinned: bool
    access_mode: AccessMode
    model_config = ConfigDict(from_attributes=True)


class AccessModeUpdate(BaseModel):
    access_mode: AccessMode


class ExpiryUpdate(BaseModel):
    expires_at: datetime


class TextItemCreate(BaseModel):
    type: Literal["text", "code"] = "text"
    body: str = Field(..., min_length=1)
    language: Optional[str] = Field(default=None, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ItemEdit(BaseModel):
    body: str = Field(..., min_length=1)


class RestoreRequest(BaseModel):
    at: datetime


class TextPayload(BaseModel):
    type: Literal["text"] = "text"
    body: Optional[str] = None


class CodePayload(BaseModel):
    type: Literal["code"] = "code"
    body: Optional[str] = None
    language: Optional[str] = None


class _BlobPayload(BaseModel):
    blob_key: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    byte_size: int = 0


class ImagePayload(_BlobPayload):
    type: Literal["image"] = "image"


class PdfPayload(_BlobPayload):
    type: Literal["pdf"] = "pdf"
    page_count: Optional[int] = None


class FileBlobPayload(_BlobPayload):
    type: Literal["file_blob"] = "file_blob"


ContentPayload = Annotated[
    Union[TextPayload, CodePayload, ImagePayload, PdfPayload, FileBlobPayload],
    Field(discriminator="type"),
]


class ContentItemOut(BaseModel):
    id: str
    room_code: str
    created_at: UtcDatetime
    updated_at: UtcDatetime
    version: int
    is_deleted: bool = False
    payload: ContentPayload
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.payload.type


class ItemReceipt(BaseModel):
    """Acknowledges a write without echoing content the holder may not read."""

    id: str
    room_code: str
    updated_at: UtcDatetime
    version: int
    is_deleted: bool


class RevisionOut(BaseModel):
    sequence: int
    item_id: str
    version: int
    is_deleted: bool
    recorded_at: UtcDatetime
    model_config = ConfigDict(from_attributes=True)


class RoomTimelineOut(BaseModel):
    room: RoomOut
    # None when the access mode forbids reads
    items: Optional[list[ContentItemOut]] = None


class RestoreOut(BaseModel):
    restored_at: UtcDatetime
    changed_item_ids: list[str]
    items: Optional[list[ContentItemOut]] = None
