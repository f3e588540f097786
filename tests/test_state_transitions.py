"""State transition tests for Job model.

Tests focus on validating the job lifecycle state machine:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- result_url is set exactly when the job is completed
"""

import pytest

from retouch.models.job import (
    ACTIVE_STATUSES,
    TRANSITIONS,
    InvalidStateTransition,
    Job,
    JobErrorCode,
    JobStatus,
    source_statuses,
)


@pytest.mark.asyncio
async def test_valid_state_transitions(session):
    """Happy path with one cooldown: processing → retrying → processing → completed."""
    job = Job(input_url="https://img.test/in.jpg", prompt="brighten")
    session.add(job)
    await session.flush()
    assert job.status == JobStatus.PROCESSING

    job.mark_retrying()
    assert job.status == JobStatus.RETRYING

    job.mark_processing()
    assert job.status == JobStatus.PROCESSING

    job.mark_completed(result_url="https://cdn.test/private/s/output/p_1.png")
    assert job.status == JobStatus.COMPLETED
    assert job.result_url == "https://cdn.test/private/s/output/p_1.png"
    assert job.finished_at is not None
    assert job.error is None


@pytest.mark.asyncio
async def test_invalid_state_transition_raises_exception(session):
    """A terminal job cannot be moved again."""
    job = Job(input_url="https://img.test/in.jpg")
    session.add(job)
    await session.flush()

    job.mark_completed(result_url="https://cdn.test/a.png")

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.mark_failed("late failure")
    assert "terminal" in str(exc_info.value).lower()

    with pytest.raises(InvalidStateTransition):
        job.mark_retrying()


def test_mark_failed_from_retrying_sets_error_fields():
    job = Job(input_url="https://img.test/in.jpg", status=JobStatus.RETRYING)

    job.mark_failed("Rate limit exceeded: 429", JobErrorCode.GENERATION_FAILED)

    assert job.status == JobStatus.FAILED
    assert job.error == "Rate limit exceeded: 429"
    assert job.error_code == "generation_failed"
    assert job.result_url is None
    assert job.finished_at is not None


def test_mark_processing_requires_retrying():
    job = Job(input_url="https://img.test/in.jpg")

    with pytest.raises(InvalidStateTransition):
        job.mark_processing()


def test_mark_completed_requires_result_url():
    job = Job(input_url="https://img.test/in.jpg")

    with pytest.raises(ValueError):
        job.mark_completed(result_url="")
    assert job.status == JobStatus.PROCESSING


def test_completed_clears_previous_error():
    job = Job(input_url="https://img.test/in.jpg", error="transient", error_code="x")

    job.mark_completed(result_url="https://cdn.test/a.png")

    assert job.error is None
    assert job.error_code is None


def test_terminal_statuses_have_no_exits():
    assert TRANSITIONS[JobStatus.COMPLETED] == ()
    assert TRANSITIONS[JobStatus.FAILED] == ()


def test_source_statuses_match_the_guards():
    assert source_statuses(JobStatus.RETRYING) == (JobStatus.PROCESSING,)
    assert source_statuses(JobStatus.PROCESSING) == (JobStatus.RETRYING,)
    assert source_statuses(JobStatus.COMPLETED) == ACTIVE_STATUSES
    assert source_statuses(JobStatus.FAILED) == ACTIVE_STATUSES

    for status in JobStatus:
        job = Job(input_url="https://img.test/in.jpg", status=status)
        for target in JobStatus:
            assert job.can_transition(target) == (status in source_statuses(target))


def test_ensure_transition_names_allowed_sources():
    job = Job(input_url="https://img.test/in.jpg", status=JobStatus.RETRYING)

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.ensure_transition(JobStatus.RETRYING)

    assert str(exc_info.value) == "Cannot mark retrying from retrying. Job must be in processing state."
