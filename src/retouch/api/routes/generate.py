"""Job submission endpoint.

- POST /generate - Validate a photo enhancement request, deduplicate it against
  existing jobs, create a job and enqueue it for the worker
"""

from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from retouch.api.dependencies import get_submission_service
from retouch.models.job import JobStatus
from retouch.services.submission import SubmissionRequest, SubmissionService

logger = structlog.get_logger()
router = APIRouter(tags=["generate"])


class GenerateRequest(BaseModel):
    """Submission body (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    prompt: Optional[str] = Field(default=None, max_length=4000)
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=255)
    photo_id: Optional[str] = Field(default=None, alias="photoId", max_length=255)
    category: Optional[str] = Field(default=None, max_length=50)
    strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    resolution: Optional[str] = Field(default=None, max_length=8)
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio", max_length=20)
    seed: Optional[int] = Field(default=None, ge=0)
    reference_image_urls: Optional[list[str]] = Field(default=None, alias="referenceImageUrls")
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey", max_length=255)
    model: Optional[str] = Field(default=None, max_length=255)


@router.post("/generate")
async def submit_generation(
    body: GenerateRequest,
    request: Request,
    x_user_id: Annotated[str | None, Header()] = None,
    service: SubmissionService = Depends(get_submission_service),
):
    """Accept a generation request.

    Returns:
        200: ``{ok, jobId, sessionId, status}`` for a new job, or
             ``{ok, jobId, sessionId, status, resultUrl, cached: true}`` for a replay/coalesced job
        400: imageUrl missing, or malformed body
        500: Job could not be created (nothing was enqueued)
    """
    if not body.image_url:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "imageUrl is required"},
        )

    submission = SubmissionRequest(
        image_url=body.image_url or "",
        prompt=body.prompt,
        session_id=body.session_id,
        photo_id=body.photo_id,
        category=body.category,
        strength=body.strength,
        resolution=body.resolution,
        aspect_ratio=body.aspect_ratio,
        seed=body.seed,
        reference_image_urls=body.reference_image_urls,
        idempotency_key=body.idempotency_key,
        model=body.model,
        user_id=x_user_id or None,
        host_header=request.headers.get("x-forwarded-host") or request.headers.get("host"),
        original_body=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )

    try:
        result = await service.submit(submission)
    except SQLAlchemyError as e:
        logger.error("job.create_failed", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": f"Failed to create job: {type(e).__name__}"},
        )

    job = result.job
    if result.cached:
        return {
            "ok": True,
            "jobId": str(job.id),
            "sessionId": result.session_id,
            "status": job.status.value,
            "resultUrl": job.result_url if job.status == JobStatus.COMPLETED else None,
            "cached": True,
        }

    return {
        "ok": True,
        "jobId": str(job.id),
        "sessionId": result.session_id,
        "status": job.status.value,
    }
