"""Job submission: fingerprinting, deduplication, job creation and enqueueing."""

import hashlib
import json
import random
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from retouch.core.timezone import epoch_ms, utcnow
from retouch.models.job import REUSABLE_STATUSES, Job, JobErrorCode, JobStatus
from retouch.models.metadata import ExecutionMetadata
from retouch.services.dispatch.interface import JobDispatcher

logger = structlog.get_logger(__name__)

# Seeds are drawn from [0, SEED_UPPER_BOUND)
SEED_UPPER_BOUND = 2147483647

DEFAULT_PHOTO_ID = "photo"


def make_session_id(prefix: str = "sess") -> str:
    return f"{prefix}_{secrets.token_hex(6)}_{epoch_ms()}"


def draw_seed(rng: Optional[random.Random] = None) -> int:
    """Uniform seed in ``[0, 2147483647)``."""
    return (rng or random.SystemRandom()).randrange(SEED_UPPER_BOUND)


def compute_fingerprint(
    *,
    image_url: str,
    prompt: Optional[str],
    category: Optional[str],
    strength: Optional[float],
    seed: int,
    resolution: Optional[str],
    aspect_ratio: Optional[str],
    reference_image_urls: Optional[list[str]],
) -> str:
    """SHA-256 over the canonical JSON of the parameters that determine the output.

    Two submissions with the same fingerprint are equivalent; any differing
    field (the seed included) yields a different fingerprint.
    """
    canonical = json.dumps(
        {
            "imageUrl": image_url,
            "prompt": prompt,
            "category": category,
            "strength": strength,
            "seed": seed,
            "resolution": resolution,
            "aspectRatio": aspect_ratio,
            "referenceImageUrls": reference_image_urls,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class SubmissionRequest:
    """Validated submission parameters."""

    image_url: str = ""
    prompt: Optional[str] = None
    session_id: Optional[str] = None
    photo_id: Optional[str] = None
    category: Optional[str] = None
    strength: Optional[float] = None
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None
    seed: Optional[int] = None
    reference_image_urls: Optional[list[str]] = None
    idempotency_key: Optional[str] = None
    model: Optional[str] = None
    user_id: Optional[str] = None
    host_header: Optional[str] = None
    original_body: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubmissionResult:
    job: Job
    session_id: Optional[str]
    cached: bool = False


class SubmissionService:
    """Creates jobs from submissions and hands them to the dispatcher.

    Exactly one job exists per accepted submission; a replayed idempotency key
    or an equivalent in-flight/completed job is returned instead of a new one.
    """

    def __init__(
        self,
        uow_factory: Callable,
        dispatcher: JobDispatcher,
        worker_url: str,
        rng: Optional[random.Random] = None,
    ):
        self.uow_factory = uow_factory
        self.dispatcher = dispatcher
        self.worker_url = worker_url
        self.rng = rng

    async def submit(self, request: SubmissionRequest) -> SubmissionResult:
        """Replay, coalesce or create a job and enqueue it.

        Raises:
            ValueError: If image_url is missing
            SQLAlchemyError: If the job could not be inserted (nothing is enqueued)
        """
        if not request.image_url:
            raise ValueError("imageUrl is required")

        seed = request.seed if request.seed is not None else draw_seed(self.rng)
        content_hash = compute_fingerprint(
            image_url=request.image_url,
            prompt=request.prompt,
            category=request.category,
            strength=request.strength,
            seed=seed,
            resolution=request.resolution,
            aspect_ratio=request.aspect_ratio,
            reference_image_urls=request.reference_image_urls,
        )
        session_id = request.session_id or make_session_id()
        log = logger.bind(content_hash=content_hash[:16], user_id=request.user_id)

        try:
            async with await self.uow_factory() as uow:
                reused = await self._find_reusable(uow, request.idempotency_key, content_hash, log)
                if reused is not None:
                    return self._reused(reused)

                metadata = ExecutionMetadata(
                    queued_at=utcnow().isoformat(),
                    content_hash=content_hash,
                    seed=seed,
                    idempotency_key=request.idempotency_key,
                    session_id=session_id,
                    photo_id=request.photo_id,
                    worker_url=self.worker_url,
                    host_header=request.host_header,
                    dispatcher=self.dispatcher.name,
                    strength=request.strength,
                    resolution=request.resolution,
                    aspect_ratio=request.aspect_ratio,
                    reference_image_urls=request.reference_image_urls,
                    model=request.model,
                )
                job = Job(
                    status=JobStatus.PROCESSING,
                    input_url=request.image_url,
                    prompt=request.prompt or "",
                    category=request.category or "other",
                    user_id=request.user_id,
                    idempotency_key=request.idempotency_key,
                    started_at=utcnow(),
                    execution_metadata=metadata.to_document(),
                )
                await uow.jobs.add(job)
        except IntegrityError:
            if not request.idempotency_key:
                raise
            # A concurrent submission with the same key inserted first
            async with await self.uow_factory() as uow:
                existing = await uow.jobs.get_by_idempotency_key(request.idempotency_key)
            if existing is None:
                raise
            log.info(
                "job.idempotency_race",
                idempotency_key=request.idempotency_key,
                job_id=str(existing.id),
                status=existing.status.value,
            )
            return self._reused(existing)

        log.info("job.submitted", job_id=str(job.id), session_id=session_id, seed=seed)

        payload = {
            "jobId": str(job.id),
            "sessionId": session_id,
            "imageUrl": request.image_url,
            "referenceImageUrls": request.reference_image_urls,
            "originalRequestBody": {**request.original_body, "seed": seed},
            "callerId": request.user_id,
            "photoId": request.photo_id,
        }
        try:
            await self.dispatcher.publish(self.worker_url, payload, concurrency=1)
        except Exception as e:
            # A job that never reaches the queue must not stay active
            error = f"Trigger failed: {e}"
            async with await self.uow_factory() as uow:
                await uow.jobs.transition(
                    job.id,
                    JobStatus.FAILED,
                    error=error,
                    error_code=JobErrorCode.DISPATCH_FAILED.value,
                    finished_at=utcnow(),
                )
            job.status = JobStatus.FAILED
            job.error = error
            job.error_code = JobErrorCode.DISPATCH_FAILED.value
            log.error(
                "job.dispatch_failed",
                job_id=str(job.id),
                dispatcher=self.dispatcher.name,
                error_type=type(e).__name__,
                error_message=str(e),
            )

        return SubmissionResult(job=job, session_id=session_id, cached=False)

    async def _find_reusable(self, uow, idempotency_key: Optional[str], content_hash: str, log) -> Optional[Job]:
        """Job replayed by idempotency key, else the newest equivalent reusable job."""
        if idempotency_key:
            existing = await uow.jobs.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                log.info(
                    "job.idempotency_hit",
                    idempotency_key=idempotency_key,
                    job_id=str(existing.id),
                    status=existing.status.value,
                )
                return existing

        cached = await uow.jobs.get_latest_by_content_hash(content_hash, REUSABLE_STATUSES)
        if cached is not None:
            log.info("job.content_match", job_id=str(cached.id), status=cached.status.value)
        return cached

    @staticmethod
    def _reused(job: Job) -> SubmissionResult:
        return SubmissionResult(
            job=job,
            session_id=(job.execution_metadata or {}).get("session_id"),
            cached=True,
        )
