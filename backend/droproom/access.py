from __future__ import annotations

import enum

from .errors import AccessDenied

# purpose: decide read/write permission from a room's access mode alone
# inputs: access mode currently stored on the room, operation kind
# outputs: permit/deny decision, no identity involved
# status: pilot


class AccessMode(str, enum.Enum):
    FULL_ACCESS = "full"
    READ_ONLY = "read_only"
    DROP_ONLY = "drop_only"


class OperationKind(str, enum.Enum):
    READ = "read"
    WRITE = "write"


_PERMISSIONS: dict[AccessMode, frozenset[OperationKind]] = {
    AccessMode.FULL_ACCESS: frozenset({OperationKind.READ, OperationKind.WRITE}),
    AccessMode.READ_ONLY: frozenset({OperationKind.READ}),
    AccessMode.DROP_ONLY: frozenset({OperationKind.WRITE}),
}


def evaluate(mode: AccessMode | str, operation: OperationKind | str) -> bool:
    """Return whether ``operation`` is allowed under ``mode``."""

    return OperationKind(operation) in _PERMISSIONS[AccessMode(mode)]


def ensure_permitted(mode: AccessMode | str, operation: OperationKind | str) -> None:
    if not evaluate(mode, operation):
        kind = OperationKind(operation).value
        raise AccessDenied(f"Room is {AccessMode(mode).value}; {kind} operations are not allowed")
