"""Scavenger tests: stuck-job selection, guarded failure and the CLI wrapper."""

from datetime import timedelta

import pytest

from retouch.core.timezone import utcnow
from retouch.models.job import Job, JobStatus
from retouch.repositories.job import JobRepository
from retouch.services.scavenger import SCAVENGER_ERROR, sweep_stuck_jobs


async def add_job(uow_factory, status: JobStatus, minutes_ago: int) -> Job:
    async with await uow_factory() as uow:
        return await uow.jobs.add(
            Job(
                input_url="https://img.test/in.jpg",
                status=status,
                started_at=utcnow() - timedelta(minutes=minutes_ago),
                execution_metadata={"steps": []},
            )
        )


async def load(session_factory, job_id) -> Job:
    async with session_factory() as session:
        return await JobRepository(session).get_by_id(job_id)


@pytest.mark.asyncio
async def test_sweep_fails_only_stuck_active_jobs(uow_factory, session_factory):
    stuck = await add_job(uow_factory, JobStatus.PROCESSING, 11)
    stuck_retrying = await add_job(uow_factory, JobStatus.RETRYING, 30)
    fresh = await add_job(uow_factory, JobStatus.PROCESSING, 2)
    done = await add_job(uow_factory, JobStatus.COMPLETED, 60)

    result = await sweep_stuck_jobs(uow_factory, threshold_minutes=10)

    assert result.cleaned_count == 2
    assert set(result.candidate_ids) == {stuck.id, stuck_retrying.id}
    for job_id in (stuck.id, stuck_retrying.id):
        job = await load(session_factory, job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == SCAVENGER_ERROR
        assert job.error_code == "scavenger_timeout"
        assert job.finished_at is not None
    assert (await load(session_factory, fresh.id)).status == JobStatus.PROCESSING
    assert (await load(session_factory, done.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_dry_run_does_not_write(uow_factory, session_factory):
    stuck = await add_job(uow_factory, JobStatus.PROCESSING, 20)

    result = await sweep_stuck_jobs(uow_factory, threshold_minutes=10, dry_run=True)

    assert result.candidate_ids == [stuck.id]
    assert result.cleaned_count == 0
    assert (await load(session_factory, stuck.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_sweep_with_nothing_to_clean(uow_factory):
    await add_job(uow_factory, JobStatus.FAILED, 60)

    result = await sweep_stuck_jobs(uow_factory)

    assert result.cleaned_count == 0
    assert result.candidate_ids == []


@pytest.mark.asyncio
async def test_sweep_respects_limit(uow_factory):
    for _ in range(3):
        await add_job(uow_factory, JobStatus.PROCESSING, 30)

    result = await sweep_stuck_jobs(uow_factory, limit=2)

    assert result.cleaned_count == 2
