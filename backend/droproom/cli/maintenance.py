"""CLI utilities for room lifecycle maintenance."""

# purpose: let operators run the expiry sweep and orphan reconciliation outside the beat schedule
# status: pilot
# depends_on: droproom.workers.lifecycle

from __future__ import annotations

import json

import typer

from ..workers.lifecycle import reconcile_orphaned_blobs, sweep_expired_rooms

app = typer.Typer(help="Room lifecycle maintenance commands")


@app.command("sweep")
def sweep_command(
    batch_size: int = typer.Option(None, help="Rooms per batch; defaults to ROOM_SWEEP_BATCH_SIZE"),
    pause_seconds: float = typer.Option(None, help="Pause between batches"),
) -> None:
    """Delete expired, unpinned rooms now."""

    if batch_size is not None and batch_size < 1:
        raise typer.BadParameter("batch size must be positive")
    report = sweep_expired_rooms(batch_size=batch_size, pause_seconds=pause_seconds)
    typer.echo(json.dumps(report.as_dict()))
    if report.failed:
        raise typer.Exit(code=1)


@app.command("reconcile")
def reconcile_command(
    grace_seconds: int = typer.Option(None, help="Spare orphans younger than this; defaults to ORPHAN_GRACE_SECONDS"),
) -> None:
    """Remove blobs that no content item references."""

    report = reconcile_orphaned_blobs(grace_seconds=grace_seconds)
    typer.echo(json.dumps(report.as_dict()))
    if report.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
