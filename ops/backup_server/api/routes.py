"""
API routes for the backup server.

Triggers answer 202 with the claimed job as soon as the slot is taken;
the work continues in the background and reports through GET /events.
Errors are BackupError subclasses rendered by the app's exception handler.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..jobs import Subscription
from ..service import BackupService
from .settings import ApiSettings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Backups"])

KEEPALIVE = ": keepalive\n\n"


# --- Request/Response Models ---


class RestoreRequest(BaseModel):
    """Request to restore tables from a full backup."""

    artifact_id: str = Field(..., min_length=1, description="Artifact to restore from")
    tables: list[str] | None = Field(None, description="Tables to restore (default: all)")
    dry_run: bool = Field(False, description="Validate and count rows without writing")


class RecoverRequest(BaseModel):
    """Request for point-in-time recovery."""

    until: datetime | None = Field(None, description="Recover to this instant (default: now)")


class ArtifactResponse(BaseModel):
    """Stored backup artifact."""

    id: str
    name: str
    kind: str
    origin: str
    created_at: str
    size_bytes: int
    web_link: str
    checksum: str | None = None
    content_checksum: str | None = None


class TablesResponse(BaseModel):
    artifact_id: str
    tables: list[str]


class TableDiffResponse(BaseModel):
    name: str
    status: str
    artifact_rows: int | None = None
    current_rows: int | None = None


class DiffResponse(BaseModel):
    artifact_id: str
    tables: list[TableDiffResponse]


# --- Dependencies ---


def get_service(request: Request) -> BackupService:
    """Get the backup service from app state."""
    return request.app.state.service


def get_settings(request: Request) -> ApiSettings:
    return request.app.state.settings


# --- Backups ---


@router.post("/backups", status_code=202)
async def trigger_backup(service: BackupService = Depends(get_service)) -> dict[str, Any]:
    """Start a full backup. 409 while a backup or export is running."""
    return service.trigger_backup()


@router.post("/backups/incremental", status_code=202)
async def trigger_incremental_export(
    service: BackupService = Depends(get_service),
) -> dict[str, Any]:
    """Export change-log rows recorded since the previous export."""
    return service.trigger_incremental_export()


@router.get("/backups", response_model=list[ArtifactResponse])
async def list_backups(
    kind: str | None = Query(None, description="full or incremental"),
    service: BackupService = Depends(get_service),
):
    """List stored artifacts, newest first."""
    artifacts = await service.list_backups(kind)
    return [artifact.to_dict() for artifact in artifacts]


@router.get("/backups/tables", response_model=TablesResponse)
async def list_tables(
    artifact_id: str = Query(..., min_length=1),
    service: BackupService = Depends(get_service),
):
    """List the tables an artifact contains, reading only its header."""
    tables = await service.list_tables(artifact_id)
    return {"artifact_id": artifact_id, "tables": tables}


@router.get("/backups/diff", response_model=DiffResponse)
async def diff_backup(
    artifact_id: str = Query(..., min_length=1),
    service: BackupService = Depends(get_service),
):
    """Compare a full backup with the live database, table by table."""
    diffs = await service.diff_backup(artifact_id)
    return {"artifact_id": artifact_id, "tables": [diff.to_dict() for diff in diffs]}


# --- Restores ---


@router.post("/restores", status_code=202)
async def trigger_restore(
    body: RestoreRequest,
    service: BackupService = Depends(get_service),
) -> dict[str, Any]:
    """Validate and start a restore. Unknown tables or artifacts fail before any work."""
    return await service.trigger_restore(body.artifact_id, body.tables, body.dry_run)


@router.post("/restores/recover", status_code=202)
async def trigger_recovery(
    body: RecoverRequest | None = None,
    service: BackupService = Depends(get_service),
) -> dict[str, Any]:
    """Restore the newest full backup before `until` and replay later exports."""
    until = body.until if body is not None else None
    return await service.trigger_recovery(until)


# --- Jobs ---


@router.get("/jobs")
async def current_jobs(service: BackupService = Depends(get_service)) -> dict[str, Any]:
    """Current backup and restore jobs."""
    return service.current_jobs()


@router.get("/jobs/history")
async def job_history(
    kind: str | None = Query(None, description="backup or restore"),
    limit: int | None = Query(None, ge=1),
    service: BackupService = Depends(get_service),
) -> list[dict[str, Any]]:
    """Finished jobs, newest first."""
    return service.job_history(kind, limit)


@router.get("/logs")
async def operation_logs(
    limit: int = Query(100, ge=1, le=1000),
    service: BackupService = Depends(get_service),
) -> list[dict[str, Any]]:
    """Operation log entries, newest first."""
    return service.logs(limit)


@router.delete("/logs")
async def clear_operation_logs(service: BackupService = Depends(get_service)) -> dict[str, int]:
    return {"cleared": service.clear_logs()}


async def event_stream(subscription: Subscription, keepalive_seconds: float) -> AsyncIterator[str]:
    """Render a subscription as server-sent event frames."""
    try:
        while True:
            try:
                event = await asyncio.wait_for(subscription.next_event(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield KEEPALIVE
                continue

            if event is None:
                break
            yield event.to_sse()
    finally:
        subscription.close()


@router.get("/events")
async def stream_events(
    service: BackupService = Depends(get_service),
    settings: ApiSettings = Depends(get_settings),
):
    """Stream job progress via Server-Sent Events. The first event is always init."""
    subscription = service.subscribe()
    return StreamingResponse(
        event_stream(subscription, settings.keepalive_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
