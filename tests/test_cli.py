"""Scavenger CLI tests."""

from datetime import timedelta

import pytest

from retouch.cli.scavenge import async_main, parse_args
from retouch.core.timezone import utcnow
from retouch.models.job import Job, JobStatus
from retouch.repositories.job import JobRepository


def test_parse_args_defaults():
    args = parse_args([])

    assert args.threshold_minutes is None
    assert args.limit is None
    assert args.dry_run is False


@pytest.mark.asyncio
async def test_cli_fails_stuck_jobs(monkeypatch, tmp_path, uow_factory, session_factory, capsys):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'retouch.db'}")
    monkeypatch.setenv("APP_ENV", "test")
    async with await uow_factory() as uow:
        job = await uow.jobs.add(
            Job(input_url="https://img.test/a.jpg", started_at=utcnow() - timedelta(minutes=45))
        )

    exit_code = await async_main(["--threshold-minutes", "30"])

    assert exit_code == 0
    assert "Jobs failed: 1" in capsys.readouterr().out
    async with session_factory() as session:
        stored = await JobRepository(session).get_by_id(job.id)
    assert stored.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_cli_dry_run(monkeypatch, tmp_path, uow_factory, session_factory, capsys):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'retouch.db'}")
    monkeypatch.setenv("APP_ENV", "test")
    async with await uow_factory() as uow:
        job = await uow.jobs.add(
            Job(input_url="https://img.test/a.jpg", started_at=utcnow() - timedelta(minutes=45))
        )

    exit_code = await async_main(["--dry-run"])

    assert exit_code == 0
    assert "[DRY RUN]" in capsys.readouterr().out
    async with session_factory() as session:
        stored = await JobRepository(session).get_by_id(job.id)
    assert stored.status == JobStatus.PROCESSING
