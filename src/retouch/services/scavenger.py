"""Scavenger: force-fails jobs stuck in an active status.

Workers can die mid-flight (platform timeout, crash, lost queue delivery).
Any job still active past the threshold is failed so clients stop waiting.
"""

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable
from uuid import UUID

import structlog

from retouch.core.timezone import utcnow
from retouch.models.job import JobErrorCode

logger = structlog.get_logger(__name__)

SCAVENGER_ERROR = "job exceeded processing timeout"


@dataclass
class SweepResult:
    """Outcome of one scavenger run."""

    cleaned_count: int = 0
    candidate_ids: list[UUID] = field(default_factory=list)
    duration_ms: int = 0


async def sweep_stuck_jobs(
    uow_factory: Callable,
    threshold_minutes: int = 10,
    limit: int = 200,
    dry_run: bool = False,
) -> SweepResult:
    """Fail active jobs whose start (or last update) is older than the threshold.

    Selection and update are separate statements; the update re-asserts the
    active status so a job completed in between is left alone.

    Args:
        uow_factory: UnitOfWork factory
        threshold_minutes: Age after which an active job is considered stuck
        limit: Maximum number of jobs handled per run
        dry_run: Only report candidates, do not update

    Returns:
        SweepResult with the number of jobs actually failed
    """
    started = time.monotonic()
    threshold = utcnow() - timedelta(minutes=threshold_minutes)

    async with await uow_factory() as uow:
        stuck_ids = await uow.jobs.get_stuck_ids(threshold, limit=limit)

    cleaned = 0
    if stuck_ids and not dry_run:
        async with await uow_factory() as uow:
            cleaned = await uow.jobs.fail_active(
                stuck_ids,
                error=SCAVENGER_ERROR,
                error_code=JobErrorCode.SCAVENGER_TIMEOUT.value,
            )

    result = SweepResult(
        cleaned_count=cleaned,
        candidate_ids=stuck_ids,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    if stuck_ids:
        logger.warning(
            "scavenger.cleaned",
            candidates=len(stuck_ids),
            cleaned=cleaned,
            dry_run=dry_run,
            threshold_minutes=threshold_minutes,
            duration_ms=result.duration_ms,
        )
    else:
        logger.info("scavenger.nothing_to_clean", duration_ms=result.duration_ms)
    return result
