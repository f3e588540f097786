"""Job runner: drives one queued job to a terminal state.

Invoked by the queue through ``POST /worker/generate``. Each invocation gets
its own database session.

## Why This Runner Does NOT Use Unit of Work (UoW) Pattern

One invocation spans several decision points that must each be visible to
pollers as soon as they happen: the ``generating`` step, every cooldown flip
between ``processing`` and ``retrying``, the ``saving`` step and the terminal
write. UoW commits once at exit, so this runner keeps explicit
``session.commit()`` calls at each of those points and uses JobRepository
directly.

Terminal writes are conditional on the job still being active, so a job the
scavenger already failed is never overwritten.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import UUID

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from retouch.core.timezone import epoch_ms, utcnow
from retouch.models.job import InvalidStateTransition, Job, JobErrorCode, JobStatus
from retouch.models.metadata import append_step, merge_metadata
from retouch.repositories.job import JobRepository
from retouch.services.exceptions import RateLimitError, ServiceError, StorageError
from retouch.services.generation.adapter import GenerationProvider
from retouch.services.generation.types import GenerationRequest, GenerationSuccess
from retouch.services.storage.object_store import (
    IMMUTABLE_CACHE_CONTROL,
    ObjectStore,
    build_output_key,
)

logger = structlog.get_logger(__name__)

DEFAULT_PHOTO_ID = "photo"


@dataclass
class RunOutcome:
    """Result of one worker invocation, shaped for the HTTP response."""

    ok: bool
    job_id: Optional[UUID] = None
    status: Optional[JobStatus] = None
    result_url: Optional[str] = None
    storage_key: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": self.ok}
        if self.job_id is not None:
            body["jobId"] = str(self.job_id)
        if self.status is not None:
            body["status"] = self.status.value
        if self.result_url:
            body["resultUrl"] = self.result_url
        if self.error:
            body["error"] = self.error
        if self.skipped:
            body["skipped"] = True
        return body


class JobRunner:
    """Runs the generate → save → complete pipeline for one job."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        provider: GenerationProvider,
        object_store: ObjectStore,
        http_client: httpx.AsyncClient,
        *,
        fetch_timeout: float = 60.0,
        upload_timeout: float = 60.0,
        backup_bucket: str = "",
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.object_store = object_store
        self.http_client = http_client
        self.fetch_timeout = fetch_timeout
        self.upload_timeout = upload_timeout
        self.backup_bucket = backup_bucket

    async def run(self, job_id: UUID, payload: Optional[dict[str, Any]] = None, queue_retry: int = 0) -> RunOutcome:
        """Process one job.

        Workflow:
        1. Load job; skip when it is no longer active (queue redelivery)
        2. Append ``generating`` step and commit
        3. Generate; cooldowns flip processing ↔ retrying
        4. Failure → failed (generation_failed)
        5. Success → ``saving`` step, upload, completed with result_url
        6. Any unexpected exception → failed (worker_exception)

        Args:
            job_id: Job to process
            payload: Queue payload (sessionId, photoId, originalRequestBody, ...)
            queue_retry: Queue delivery counter (Upstash-Retried)

        Returns:
            RunOutcome describing the terminal write (or the skip)
        """
        payload = payload or {}
        start_time = time.time()

        async with self.session_factory() as session:
            repo = JobRepository(session)
            job = await repo.get_by_id(job_id)
            if job is None:
                logger.warning("job.worker.not_found", job_id=str(job_id))
                return RunOutcome(ok=False, job_id=job_id, error="Job not found")

            if not job.is_active:
                logger.info(
                    "job.worker.skipped",
                    job_id=str(job_id),
                    status=job.status.value,
                    queue_retry=queue_retry,
                )
                return RunOutcome(ok=True, job_id=job_id, status=job.status, skipped=True)

            log = logger.bind(job_id=str(job_id), queue_retry=queue_retry)
            log.info("job.worker.started")

            try:
                job.execution_metadata = append_step(
                    job.execution_metadata, "generating", queue_retry=queue_retry
                )
                job.updated_at = utcnow()
                session.add(job)
                await session.commit()

                request = self.build_request(job, payload)
                result = await self.provider.generate(
                    request,
                    on_retry=self._cooldown_hook(session, job),
                    on_resume=self._resume_hook(session, job),
                )

                if not result.ok:
                    return await self._fail(
                        session, job, result.error, JobErrorCode.GENERATION_FAILED, start_time
                    )

                await session.refresh(job)
                if not job.can_transition(JobStatus.COMPLETED):
                    return self._discarded(
                        job, "job.worker.completion_discarded", f"job is {job.status.value}"
                    )
                job.execution_metadata = append_step(job.execution_metadata, "saving", is_cooling_down=False)
                job.updated_at = utcnow()
                session.add(job)
                await session.commit()

                try:
                    storage_key, result_url = await self._store_result(job, payload, result)
                except (StorageError, asyncio.TimeoutError, httpx.HTTPError) as e:
                    message = str(e) or "Result storage timed out"
                    return await self._fail(
                        session, job, message, JobErrorCode.STORAGE_FAILED, start_time
                    )

                return await self._complete(session, job, result, storage_key, result_url, start_time)

            except Exception as e:
                # The runner never leaves an active job behind
                log.error(
                    "job.worker.exception",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await session.rollback()
                return await self._fail(
                    session, job, str(e) or type(e).__name__, JobErrorCode.WORKER_EXCEPTION, start_time
                )

    def build_request(self, job: Job, payload: dict[str, Any]) -> GenerationRequest:
        """Generation arguments from the stored job, the queue payload filling gaps."""
        metadata = job.execution_metadata or {}
        body = payload.get("originalRequestBody") or {}
        reference_urls = metadata.get("reference_image_urls") or payload.get("referenceImageUrls") or []
        seed = metadata.get("seed")
        return GenerationRequest(
            image_url=job.input_url or payload.get("imageUrl") or "",
            prompt=job.prompt or body.get("prompt") or "",
            strength=metadata.get("strength", body.get("strength")),
            resolution=metadata.get("resolution") or body.get("resolution"),
            aspect_ratio=metadata.get("aspect_ratio") or body.get("aspectRatio"),
            reference_image_urls=list(reference_urls),
            seed=seed if seed is not None else body.get("seed"),
            model=metadata.get("model") or body.get("model"),
            category=job.category,
        )

    def _cooldown_hook(self, session: AsyncSession, job: Job):
        repo = JobRepository(session)

        async def on_retry(attempt: int, delay: float, error: ServiceError) -> None:
            await session.refresh(job)
            cooling_down = isinstance(error, RateLimitError)
            updates: dict[str, Any] = {"retry_count": attempt, "is_cooling_down": cooling_down}
            if cooling_down:
                metadata = append_step(job.execution_metadata, "cooling_down", **updates)
            else:
                metadata = merge_metadata(job.execution_metadata, updates)
            if cooling_down and job.can_transition(JobStatus.RETRYING):
                moved = await repo.transition(job.id, JobStatus.RETRYING, execution_metadata=metadata)
            else:
                moved = await repo.update_active(job.id, execution_metadata=metadata)
            await session.commit()
            logger.info(
                "job.worker.cooldown",
                job_id=str(job.id),
                attempt=attempt,
                delay_seconds=delay,
                rate_limited=cooling_down,
                updated=moved,
            )

        return on_retry

    def _resume_hook(self, session: AsyncSession, job: Job):
        repo = JobRepository(session)

        async def on_resume(attempt: int) -> None:
            await session.refresh(job)
            metadata = append_step(job.execution_metadata, "generating", is_cooling_down=False)
            if job.can_transition(JobStatus.PROCESSING):
                await repo.transition(job.id, JobStatus.PROCESSING, execution_metadata=metadata)
            else:
                await repo.update_active(job.id, execution_metadata=metadata)
            await session.commit()

        return on_resume

    async def _store_result(
        self, job: Job, payload: dict[str, Any], result: GenerationSuccess
    ) -> tuple[str, str]:
        """Upload the generated image and return (storage_key, public_url).

        Raises:
            StorageError: Upload failed or no image data
            asyncio.TimeoutError: Fetch or upload exceeded its budget
            ConfigurationError: No public base URL configured
        """
        data, mime_type = await self._result_bytes(result)

        metadata = job.execution_metadata or {}
        session_id = metadata.get("session_id") or payload.get("sessionId") or "anonymous"
        photo_id = metadata.get("photo_id") or payload.get("photoId") or DEFAULT_PHOTO_ID
        key = build_output_key(session_id, photo_id, epoch_ms(), mime_type)

        await asyncio.wait_for(
            self.object_store.put(key, data, mime_type, cache_control=IMMUTABLE_CACHE_CONTROL),
            timeout=self.upload_timeout,
        )
        return key, self.object_store.public_url(key)

    async def _result_bytes(self, result: GenerationSuccess) -> tuple[bytes, str]:
        if result.image_bytes is not None:
            return result.image_bytes, result.mime_type
        if not result.image_url:
            raise StorageError("Generation succeeded but no image data found")

        response = await asyncio.wait_for(
            self.http_client.get(result.image_url, follow_redirects=True),
            timeout=self.fetch_timeout,
        )
        if response.status_code >= 400:
            raise StorageError(f"Failed to fetch result image: {response.status_code}")
        content_type = response.headers.get("content-type") or result.mime_type
        return response.content, content_type.split(";")[0].strip()

    async def _complete(
        self,
        session: AsyncSession,
        job: Job,
        result: GenerationSuccess,
        storage_key: str,
        result_url: str,
        start_time: float,
    ) -> RunOutcome:
        repo = JobRepository(session)
        await session.refresh(job)
        try:
            job.ensure_transition(JobStatus.COMPLETED)
        except InvalidStateTransition as e:
            return self._discarded(job, "job.worker.completion_discarded", str(e))

        duration_ms = int((time.time() - start_time) * 1000)
        metadata = merge_metadata(
            job.execution_metadata,
            {
                "duration_ms": duration_ms,
                "completed": True,
                "is_cooling_down": False,
                "storage_key": storage_key,
                "provider": result.model,
                "upscaled": result.upscaled,
            },
        )
        now = utcnow()
        updated = await repo.transition(
            job.id,
            JobStatus.COMPLETED,
            result_url=result_url,
            error=None,
            error_code=None,
            finished_at=now,
            updated_at=now,
            execution_metadata=metadata,
        )
        await session.commit()

        if not updated:
            # Moved to a terminal state between the refresh and the update
            await session.refresh(job)
            return self._discarded(job, "job.worker.completion_discarded", f"job is {job.status.value}")

        logger.info(
            "job.worker.completed",
            job_id=str(job.id),
            result_url=result_url,
            model=result.model,
            upscaled=result.upscaled,
            duration_ms=duration_ms,
        )
        return RunOutcome(
            ok=True,
            job_id=job.id,
            status=JobStatus.COMPLETED,
            result_url=result_url,
            storage_key=storage_key,
        )

    async def _fail(
        self,
        session: AsyncSession,
        job: Job,
        error: Optional[str],
        error_code: JobErrorCode,
        start_time: float,
    ) -> RunOutcome:
        repo = JobRepository(session)
        message = error or "generation failed"
        await session.refresh(job)
        try:
            job.ensure_transition(JobStatus.FAILED)
        except InvalidStateTransition as e:
            return self._discarded(job, "job.worker.failure_discarded", str(e))

        now = utcnow()
        metadata = merge_metadata(
            job.execution_metadata,
            {"duration_ms": int((time.time() - start_time) * 1000), "is_cooling_down": False},
        )
        updated = await repo.transition(
            job.id,
            JobStatus.FAILED,
            result_url=None,
            error=message,
            error_code=error_code.value,
            finished_at=now,
            updated_at=now,
            execution_metadata=metadata,
        )
        await session.commit()

        if not updated:
            await session.refresh(job)
            return self._discarded(job, "job.worker.failure_discarded", f"job is {job.status.value}")

        logger.error(
            "job.worker.failed",
            job_id=str(job.id),
            error_code=error_code.value,
            error_message=message,
        )
        return RunOutcome(ok=False, job_id=job.id, status=JobStatus.FAILED, error=message)

    def _discarded(self, job: Job, event: str, reason: str) -> RunOutcome:
        """Leave a job another writer already finished untouched."""
        logger.warning(
            event,
            job_id=str(job.id),
            status=job.status.value,
            reason=reason,
        )
        return RunOutcome(ok=False, job_id=job.id, status=job.status, error=job.error)

    async def backup_result(self, storage_key: str) -> None:
        """Best-effort copy of a stored result into the backup bucket."""
        if not self.backup_bucket or not storage_key:
            return
        try:
            await self.object_store.copy_to(storage_key, self.backup_bucket)
            logger.info("job.backup.copied", key=storage_key, bucket=self.backup_bucket)
        except ServiceError as e:
            logger.warning("job.backup.failed", key=storage_key, error_message=str(e))
