"""Job status endpoints.

- GET /jobs/{job_id} - Job view for polling clients
- GET /jobs/{job_id}/events - Server-sent change stream for one job
- POST /jobs/delete - Delete jobs by id list
"""

import asyncio
import json
import time
from typing import Any, AsyncIterator
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from retouch.api.dependencies import get_settings, get_uow_factory
from retouch.core.config import Settings
from retouch.core.dependencies import get_uow
from retouch.models.job import TERMINAL_STATUSES, Job
from retouch.models.metadata import current_step
from retouch.uow import UnitOfWork

logger = structlog.get_logger()
router = APIRouter(prefix="/jobs", tags=["jobs"])


def serialize_job(job: Job) -> dict[str, Any]:
    """Client view of a job (camelCase)."""
    metadata = job.execution_metadata or {}
    return {
        "jobId": str(job.id),
        "status": job.status.value,
        "resultUrl": job.result_url,
        "error": job.error,
        "errorCode": job.error_code,
        "currentStep": current_step(metadata),
        "isCoolingDown": bool(metadata.get("is_cooling_down", False)),
        "retryCount": int(metadata.get("retry_count") or 0),
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
        "finishedAt": job.finished_at.isoformat() if job.finished_at else None,
    }


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.post("/delete")
async def delete_jobs(request: Request, uow: UnitOfWork = Depends(get_uow)):
    """Delete jobs by id.

    Body: ``{"jobIds": ["<uuid>", ...]}``

    Returns:
        200: ``{ok, deleted}``
        400: jobIds missing, not a list, or containing a non-UUID
    """
    try:
        body = await request.json()
    except ValueError:
        body = None
    job_ids = body.get("jobIds") if isinstance(body, dict) else None
    if not isinstance(job_ids, list):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "jobIds array is required"},
        )

    try:
        ids = [UUID(str(job_id)) for job_id in job_ids]
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "jobIds must be UUIDs"},
        )

    deleted = await uow.jobs.delete_many(ids)
    logger.info("jobs.deleted", requested=len(ids), deleted=deleted)
    return {"ok": True, "deleted": deleted}


@router.get("/{job_id}")
async def get_job(job_id: UUID, uow: UnitOfWork = Depends(get_uow)):
    """Current job view.

    Returns:
        200: ``{ok: true, ...job view}``
        404: Job not found
    """
    job = await uow.jobs.get_by_id(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return {"ok": True, **serialize_job(job)}


@router.get("/{job_id}/events")
async def job_events(
    job_id: UUID,
    request: Request,
    settings: Settings = Depends(get_settings),
    uow_factory=Depends(get_uow_factory),
):
    """Server-sent events for one job.

    Emits a ``job`` event each time the row changes (status or updated_at),
    and closes after a terminal status or ``EVENTS_MAX_SECONDS``.
    """
    async with await uow_factory() as uow:
        if await uow.jobs.get_by_id(job_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    async def stream() -> AsyncIterator[str]:
        deadline = time.monotonic() + settings.events_max_seconds
        last_seen = None
        while True:
            async with await uow_factory() as uow:
                job = await uow.jobs.get_by_id(job_id)

            if job is None:
                yield _sse("deleted", {"jobId": str(job_id)})
                return

            marker = (job.status, job.updated_at)
            if marker != last_seen:
                last_seen = marker
                yield _sse("job", serialize_job(job))

            if job.status in TERMINAL_STATUSES:
                return
            if time.monotonic() >= deadline:
                yield _sse("timeout", {"jobId": str(job_id)})
                return
            if await request.is_disconnected():
                logger.debug("jobs.events.disconnected", job_id=str(job_id))
                return

            await asyncio.sleep(settings.events_poll_interval)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
