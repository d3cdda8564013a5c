"""Celery worker reaping expired rooms and orphaned blobs."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from .. import content, models, rooms
from ..config import get_settings
from ..database import SessionLocal
from ..errors import BlobNotFound, OrphanedBlob, StorageFailure
from ..storage import BlobStore, get_blob_store
from ..tasks import celery_app

# purpose: converge expired rooms to GONE and storage to what metadata references
# inputs: session factory, blob store, sweep batch/pause policy, orphan grace window
# outputs: SweepReport / ReconcileReport summaries, per-room failure logs
# status: pilot

_logger = get_task_logger(__name__)

SessionFactory = Callable[[], Session]


@dataclass
class SweepReport:
    started_at: datetime
    deleted: list[str] = field(default_factory=list)
    already_gone: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    batches: int = 0

    @property
    def candidates(self) -> int:
        return len(self.deleted) + len(self.already_gone) + len(self.skipped) + len(self.failed)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        return payload


@dataclass
class ReconcileReport:
    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    recent: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def find_expired_rooms(
    session_factory: SessionFactory = SessionLocal,
    *,
    now: datetime | None = None,
    limit: int = 100,
    after: str | None = None,
) -> list[str]:
    db = session_factory()
    try:
        return rooms.list_expired_codes(db, now=now, limit=limit, after=after)
    finally:
        db.close()


def _purge_expired_room(
    session_factory: SessionFactory,
    store: BlobStore,
    code: str,
    now: datetime,
    report: SweepReport,
) -> None:
    db = session_factory()
    try:
        room = rooms.load_room(db, code)
        if room is not None and not room.is_expired(now):
            # Pinned or extended since the candidate query ran.
            report.skipped.append(code)
            return
        removed = rooms.delete_room(db, store, code)
    except Exception as exc:
        db.rollback()
        report.failed[code] = str(exc)
        _logger.exception("Failed to purge expired room %s; it stays eligible for the next sweep", code)
        return
    finally:
        db.close()
    if removed:
        report.deleted.append(code)
    else:
        report.already_gone.append(code)


def sweep_expired_rooms(
    *,
    session_factory: SessionFactory = SessionLocal,
    store: BlobStore | None = None,
    now: datetime | None = None,
    batch_size: int | None = None,
    pause_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SweepReport:
    """Delete every expired, unpinned room in bounded batches.

    A room that fails is logged and left for the next run; every step of a
    purge is idempotent so overlapping sweeps and user deletes converge.
    """

    settings = get_settings()
    store = store or get_blob_store()
    now = models.as_utc(now) if now is not None else models.utcnow()
    batch_size = batch_size or settings.room_sweep_batch_size
    pause_seconds = settings.room_sweep_pause_seconds if pause_seconds is None else pause_seconds

    report = SweepReport(started_at=now)
    after: str | None = None
    while True:
        batch = find_expired_rooms(session_factory, now=now, limit=batch_size, after=after)
        if not batch:
            break
        report.batches += 1
        for code in batch:
            _purge_expired_room(session_factory, store, code, now, report)
        after = batch[-1]
        if len(batch) < batch_size:
            break
        if pause_seconds:
            sleep(pause_seconds)

    _logger.info(
        "Room sweep finished: %d deleted, %d already gone, %d skipped, %d failed in %d batches",
        len(report.deleted),
        len(report.already_gone),
        len(report.skipped),
        len(report.failed),
        report.batches,
    )
    return report


def reconcile_orphaned_blobs(
    *,
    session_factory: SessionFactory = SessionLocal,
    store: BlobStore | None = None,
    now: datetime | None = None,
    grace_seconds: int | None = None,
) -> ReconcileReport:
    """Delete stored blobs no content row references, sparing ones younger than the grace window."""

    settings = get_settings()
    store = store or get_blob_store()
    now = models.as_utc(now) if now is not None else models.utcnow()
    grace = timedelta(seconds=settings.orphan_grace_seconds if grace_seconds is None else grace_seconds)

    # List storage before reading references so a blob committed in between counts as referenced.
    keys = store.list_keys("")
    db = session_factory()
    try:
        referenced = content.referenced_blob_keys(db)
    finally:
        db.close()

    report = ReconcileReport(scanned=len(keys))
    for key in keys:
        if key in referenced:
            continue
        try:
            if now - store.modified_at(key) < grace:
                report.recent.append(key)
                continue
            store.delete(key)
        except BlobNotFound:
            continue
        except StorageFailure as exc:
            report.failed[key] = str(exc)
            _logger.error("Failed to remove orphaned blob %s: %s", key, exc)
            continue
        report.deleted.append(key)
        _logger.warning("%s removed", OrphanedBlob(key))

    _logger.info(
        "Blob reconciliation finished: %d scanned, %d orphans removed, %d within grace, %d failed",
        report.scanned,
        len(report.deleted),
        len(report.recent),
        len(report.failed),
    )
    return report


@celery_app.task
def run_room_sweep() -> dict[str, Any]:
    return sweep_expired_rooms().as_dict()


@celery_app.task
def run_blob_reconciliation() -> dict[str, Any]:
    return reconcile_orphaned_blobs().as_dict()
