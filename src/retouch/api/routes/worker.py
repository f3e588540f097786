"""Queue-invoked worker endpoint.

- POST /worker/generate - Drive one job to a terminal state

Handled outcomes (completed, failed, skipped) answer 200 so the queue does not
redeliver; a redelivery would be skipped anyway because the job is terminal.
"""

from typing import Annotated, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from retouch.api.dependencies import get_job_runner, require_worker_secret
from retouch.workers.job_runner import JobRunner

logger = structlog.get_logger()
router = APIRouter(tags=["worker"])


class WorkerPayload(BaseModel):
    """Payload published by the submission endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    job_id: UUID = Field(alias="jobId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    reference_image_urls: Optional[list[str]] = Field(default=None, alias="referenceImageUrls")
    original_request_body: dict = Field(default_factory=dict, alias="originalRequestBody")
    caller_id: Optional[str] = Field(default=None, alias="callerId")
    photo_id: Optional[str] = Field(default=None, alias="photoId")


@router.post("/worker/generate", name="run_worker", dependencies=[Depends(require_worker_secret)])
async def run_worker(
    payload: WorkerPayload,
    background_tasks: BackgroundTasks,
    upstash_retried: Annotated[int | None, Header()] = None,
    runner: JobRunner = Depends(get_job_runner),
):
    """Process one job.

    Returns:
        200: ``{ok, jobId, status, resultUrl?, error?, skipped?}``
        401: Worker secret configured and not presented
        404: Job not found
    """
    outcome = await runner.run(
        payload.job_id,
        payload.model_dump(mode="json", by_alias=True),
        queue_retry=upstash_retried or 0,
    )

    if outcome.status is None and not outcome.ok:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=outcome.to_response())

    if outcome.ok and outcome.storage_key:
        # Runs after the response is sent
        background_tasks.add_task(runner.backup_result, outcome.storage_key)

    return outcome.to_response()
