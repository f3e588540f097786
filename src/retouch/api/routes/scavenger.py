"""Scheduler-invoked scavenger endpoint.

- GET|POST /scavenger - Fail jobs stuck in an active status
"""

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from retouch.api.dependencies import get_settings, get_uow_factory, require_cron_secret
from retouch.core.config import Settings
from retouch.services.scavenger import sweep_stuck_jobs

logger = structlog.get_logger()
router = APIRouter(tags=["scavenger"])


@router.api_route(
    "/scavenger",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
async def run_scavenger(
    settings: Settings = Depends(get_settings),
    uow_factory=Depends(get_uow_factory),
):
    """Fail active jobs older than the configured threshold.

    Returns:
        200: ``{ok, cleanedCount, durationMs}``
        401: Missing or wrong cron secret
        500: Database error
    """
    try:
        result = await sweep_stuck_jobs(
            uow_factory,
            threshold_minutes=settings.scavenger_threshold_minutes,
            limit=settings.scavenger_batch_limit,
        )
    except SQLAlchemyError as e:
        logger.error("scavenger.failed", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": f"Scavenger failed: {type(e).__name__}"},
        )

    return {"ok": True, "cleanedCount": result.cleaned_count, "durationMs": result.duration_ms}
