"""Job runner tests.

The provider is replaced by a scripted fake so each test controls the
generation outcome and the retry hooks the runner installs.
"""

from uuid import uuid4

import httpx
import pytest

from conftest import FakeObjectStore
from retouch.models.job import Job, JobStatus
from retouch.models.metadata import ExecutionMetadata
from retouch.repositories.job import JobRepository
from retouch.services.exceptions import ConfigurationError, RateLimitError, StorageError
from retouch.services.generation.types import GenerationFailure, GenerationSuccess
from retouch.workers.job_runner import JobRunner

PNG_BYTES = b"\x89PNG\r\n\x1a\nresult"


class ScriptedProvider:
    """GenerationProvider stand-in.

    ``result`` is returned (or raised); ``during`` is awaited mid-generation
    to let a test observe or mutate the job while the worker is busy.
    """

    def __init__(self, result, rate_limited: bool = False, during=None):
        self.result = result
        self.rate_limited = rate_limited
        self.during = during
        self.requests = []

    async def generate(self, request, on_retry=None, on_resume=None):
        self.requests.append(request)
        if self.rate_limited:
            await on_retry(1, 30.0, RateLimitError("Rate limit exceeded: 429"))
        if self.during is not None:
            await self.during()
        if self.rate_limited:
            await on_resume(1)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def result_server(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/out.jpg":
        return httpx.Response(200, content=b"\xff\xd8jpeg", headers={"content-type": "image/jpeg"})
    return httpx.Response(404)


async def create_job(uow_factory, status=JobStatus.PROCESSING) -> Job:
    metadata = ExecutionMetadata(
        queued_at="2026-01-01T00:00:00",
        content_hash="hash",
        seed=5,
        session_id="sess_1",
        photo_id="p1",
        strength=0.4,
        aspect_ratio="4:3",
    )
    async with await uow_factory() as uow:
        return await uow.jobs.add(
            Job(
                input_url="https://img.test/in.jpg",
                prompt="brighten",
                category="interior",
                status=status,
                execution_metadata=metadata.to_document(),
            )
        )


async def load(session_factory, job_id) -> Job:
    async with session_factory() as session:
        return await JobRepository(session).get_by_id(job_id)


def make_runner(session_factory, provider, object_store=None) -> JobRunner:
    return JobRunner(
        session_factory,
        provider,
        object_store or FakeObjectStore(),
        httpx.AsyncClient(transport=httpx.MockTransport(result_server)),
        fetch_timeout=5,
        upload_timeout=5,
        backup_bucket="retouch-backup",
    )


@pytest.mark.asyncio
async def test_success_uploads_and_completes(session_factory, uow_factory, object_store):
    job = await create_job(uow_factory)
    provider = ScriptedProvider(GenerationSuccess(image_bytes=PNG_BYTES, model="gemini-3-pro-image-preview"))
    runner = make_runner(session_factory, provider, object_store)

    outcome = await runner.run(job.id, {"sessionId": "sess_1"})

    assert outcome.ok is True
    assert outcome.status == JobStatus.COMPLETED
    assert outcome.result_url.startswith("https://cdn.retouch.test/private/sess_1/output/p1_")
    assert outcome.result_url.endswith(".png")

    stored_object = object_store.objects[outcome.storage_key]
    assert stored_object["data"] == PNG_BYTES
    assert stored_object["content_type"] == "image/png"
    assert stored_object["cache_control"] == "public, max-age=31536000, immutable"

    stored = await load(session_factory, job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_url == outcome.result_url
    assert stored.finished_at is not None
    metadata = stored.execution_metadata
    assert [step["name"] for step in metadata["steps"]] == ["generating", "saving"]
    assert metadata["completed"] is True
    assert metadata["storage_key"] == outcome.storage_key
    assert metadata["provider"] == "gemini-3-pro-image-preview"

    request = provider.requests[0]
    assert request.seed == 5
    assert request.strength == 0.4
    assert request.aspect_ratio == "4:3"


@pytest.mark.asyncio
async def test_url_result_is_fetched_and_stored(session_factory, uow_factory, object_store):
    job = await create_job(uow_factory)
    provider = ScriptedProvider(GenerationSuccess(image_url="https://replicate.delivery/out.jpg"))
    runner = make_runner(session_factory, provider, object_store)

    outcome = await runner.run(job.id)

    assert outcome.ok is True
    assert outcome.storage_key.endswith(".jpg")
    assert object_store.objects[outcome.storage_key]["content_type"] == "image/jpeg"


@pytest.mark.asyncio
async def test_generation_failure_marks_job_failed(session_factory, uow_factory, object_store):
    job = await create_job(uow_factory)
    provider = ScriptedProvider(GenerationFailure(error="Generation stop: IMAGE_SAFETY"))
    runner = make_runner(session_factory, provider, object_store)

    outcome = await runner.run(job.id)

    assert outcome.ok is False
    assert outcome.error == "Generation stop: IMAGE_SAFETY"
    stored = await load(session_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Generation stop: IMAGE_SAFETY"
    assert stored.error_code == "generation_failed"
    assert stored.result_url is None
    assert object_store.objects == {}


@pytest.mark.asyncio
async def test_terminal_job_is_skipped(session_factory, uow_factory):
    job = await create_job(uow_factory, status=JobStatus.COMPLETED)
    provider = ScriptedProvider(GenerationSuccess(image_bytes=PNG_BYTES))
    runner = make_runner(session_factory, provider)

    outcome = await runner.run(job.id)

    assert outcome.skipped is True
    assert outcome.to_response()["skipped"] is True
    assert provider.requests == []


@pytest.mark.asyncio
async def test_missing_job(session_factory):
    runner = make_runner(session_factory, ScriptedProvider(GenerationSuccess(image_bytes=PNG_BYTES)))

    outcome = await runner.run(uuid4())

    assert outcome.ok is False
    assert outcome.status is None
    assert outcome.error == "Job not found"


@pytest.mark.asyncio
async def test_storage_failure_marks_job_failed(session_factory, uow_factory):
    job = await create_job(uow_factory)
    store = FakeObjectStore(fail_put=StorageError("Upload failed: AccessDenied"))
    runner = make_runner(session_factory, ScriptedProvider(GenerationSuccess(image_bytes=PNG_BYTES)), store)

    outcome = await runner.run(job.id)

    assert outcome.ok is False
    stored = await load(session_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "storage_failed"
    assert stored.error == "Upload failed: AccessDenied"
    assert stored.result_url is None


@pytest.mark.asyncio
async def test_unexpected_exception_marks_job_failed(session_factory, uow_factory):
    job = await create_job(uow_factory)
    runner = make_runner(session_factory, ScriptedProvider(ConfigurationError("Vertex AI credentials not configured")))

    outcome = await runner.run(job.id)

    assert outcome.ok is False
    stored = await load(session_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "worker_exception"
    assert stored.error == "Vertex AI credentials not configured"


@pytest.mark.asyncio
async def test_rate_limit_cooldown_is_visible(session_factory, uow_factory, object_store):
    job = await create_job(uow_factory)
    seen = {}

    async def observe():
        snapshot = await load(session_factory, job.id)
        seen["status"] = snapshot.status
        seen["metadata"] = snapshot.execution_metadata

    provider = ScriptedProvider(GenerationSuccess(image_bytes=PNG_BYTES), rate_limited=True, during=observe)
    runner = make_runner(session_factory, provider, object_store)

    outcome = await runner.run(job.id)

    assert seen["status"] == JobStatus.RETRYING
    assert seen["metadata"]["is_cooling_down"] is True
    assert seen["metadata"]["retry_count"] == 1
    assert seen["metadata"]["steps"][-1]["name"] == "cooling_down"

    assert outcome.ok is True
    stored = await load(session_factory, job.id)
    assert stored.status == JobStatus.COMPLETED
    assert [step["name"] for step in stored.execution_metadata["steps"]] == [
        "generating",
        "cooling_down",
        "generating",
        "saving",
    ]
    assert stored.execution_metadata["is_cooling_down"] is False


@pytest.mark.asyncio
async def test_late_success_does_not_overwrite_scavenger_failure(session_factory, uow_factory, object_store):
    """A job failed by the scavenger mid-generation stays failed."""
    job = await create_job(uow_factory)

    async def scavenge():
        async with await uow_factory() as uow:
            await uow.jobs.fail_active([job.id], error="job exceeded processing timeout", error_code="scavenger_timeout")

    provider = ScriptedProvider(GenerationSuccess(image_bytes=PNG_BYTES), during=scavenge)
    runner = make_runner(session_factory, provider, object_store)

    outcome = await runner.run(job.id)

    assert outcome.ok is False
    assert outcome.status == JobStatus.FAILED
    assert outcome.error == "job exceeded processing timeout"
    assert object_store.objects == {}
    stored = await load(session_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "job exceeded processing timeout"
    assert stored.result_url is None


@pytest.mark.asyncio
async def test_late_failure_keeps_scavenger_error(session_factory, uow_factory):
    job = await create_job(uow_factory)

    async def scavenge():
        async with await uow_factory() as uow:
            await uow.jobs.fail_active([job.id], error="job exceeded processing timeout", error_code="scavenger_timeout")

    provider = ScriptedProvider(GenerationFailure(error="Service unavailable: 503", retryable=True), during=scavenge)
    runner = make_runner(session_factory, provider)

    outcome = await runner.run(job.id)

    assert outcome.status == JobStatus.FAILED
    assert outcome.error == "job exceeded processing timeout"
    stored = await load(session_factory, job.id)
    assert stored.error == "job exceeded processing timeout"
    assert stored.error_code == "scavenger_timeout"


@pytest.mark.asyncio
async def test_backup_result_copies_to_backup_bucket(session_factory, object_store):
    runner = make_runner(session_factory, ScriptedProvider(None), object_store)

    await runner.backup_result("private/s/output/p_1.png")

    assert object_store.copies == [("private/s/output/p_1.png", "retouch-backup")]
