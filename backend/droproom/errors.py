"""Typed failures surfaced by the room and content core."""

from __future__ import annotations

# purpose: give the transport layer distinguishable error kinds to map onto status codes
# status: pilot


class RoomError(Exception):
    """Base class for every failure the core reports to its callers."""

    status_code = 500
    retryable = False
    error = "room_error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.error
        super().__init__(self.detail)


class InvalidRequest(RoomError):
    """Request is malformed."""

    status_code = 400
    error = "invalid_request"


class RoomNotFound(RoomError):
    """Room not found or expired."""

    status_code = 404
    error = "room_not_found"


class ItemNotFound(RoomError):
    """Content item not found."""

    status_code = 404
    error = "item_not_found"


class BlobNotFound(RoomError):
    """Blob payload not found."""

    status_code = 404
    error = "blob_not_found"


class AccessDenied(RoomError):
    """Operation not permitted by the room's access mode."""

    status_code = 403
    error = "access_denied"


class RoomFull(RoomError):
    """Room item limit reached."""

    status_code = 409
    error = "room_full"


class PayloadTooLarge(RoomError):
    """Payload exceeds the configured size limit."""

    status_code = 413
    error = "payload_too_large"


class StorageFailure(RoomError):
    """Storage backend failed; retry the request."""

    status_code = 503
    retryable = True
    error = "storage_failure"


class AllocationFailure(RoomError):
    """Could not allocate an unused room code."""

    status_code = 503
    retryable = True
    error = "allocation_failure"


class OrphanedBlob(RoomError):
    """Blob present in storage without a metadata reference."""

    error = "orphaned_blob"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Orphaned blob {key}")
