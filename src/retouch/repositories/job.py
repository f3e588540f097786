"""Job repository for the retouch backend.

Provides data access methods for Job entities, including the conditional
(compare-and-swap on status) updates the worker and scavenger rely on.
"""

from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from retouch.core.timezone import utcnow
from retouch.models.job import ACTIVE_STATUSES, Job, JobStatus, source_statuses


class JobRepository:
    """Repository for Job entities.

    The repository never commits; callers own the transaction (UnitOfWork or
    explicit session management in the worker).
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: Job) -> Job:
        """Persist new job to database.

        Args:
            job: Job entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> Job | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(select(Job).where(Job.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        """Retrieve the job created for a client-supplied idempotency key.

        Args:
            idempotency_key: Key stored in the unique ``idempotency_key`` column

        Returns:
            Matching job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job).where(Job.idempotency_key == idempotency_key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_latest_by_content_hash(
        self, content_hash: str, statuses: Iterable[JobStatus]
    ) -> Job | None:
        """Retrieve the newest job with a given content fingerprint and status.

        Args:
            content_hash: Fingerprint stored in ``execution_metadata.content_hash``
            statuses: Statuses eligible for reuse

        Returns:
            Newest matching job if found, None otherwise
        """
        hash_expr = Job.execution_metadata["content_hash"].as_string()  # type: ignore[index]
        result = await self.session.execute(
            select(Job)
            .where(hash_expr == content_hash)
            .where(Job.status.in_(list(statuses)))  # type: ignore[attr-defined]
            .order_by(Job.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(self, job_id: UUID, target: JobStatus, **values: Any) -> bool:
        """Move one job to ``target`` if its current status allows that move.

        The allowed source statuses come from ``TRANSITIONS``, the same table the
        ``Job.mark_*`` guards check.

        Query explanation:
            UPDATE jobs SET status = :target, <values>, updated_at = now()
            WHERE id = :job_id AND status IN (<sources of target>)

        Args:
            job_id: Job to update
            target: Status to move to
            **values: Other column values to write

        Returns:
            True if the row was updated, False if the predicate did not match
        """
        return await self._update_where(job_id, source_statuses(target), status=target, **values)

    async def update_active(self, job_id: UUID, **values: Any) -> bool:
        """Write column values to a job that is still active, keeping its status.

        Returns:
            True if the row was updated, False if the job is already terminal
        """
        return await self._update_where(job_id, ACTIVE_STATUSES, **values)

    async def _update_where(
        self, job_id: UUID, from_statuses: Iterable[JobStatus], **values: Any
    ) -> bool:
        values.setdefault("updated_at", utcnow())
        result = await self.session.execute(
            update(Job)
            .where(Job.id == job_id)  # type: ignore[arg-type]
            .where(Job.status.in_(list(from_statuses)))  # type: ignore[attr-defined]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def get_stuck_ids(self, threshold: datetime, limit: int = 200) -> list[UUID]:
        """Retrieve ids of active jobs that have not progressed since ``threshold``.

        Query explanation:
        - status IN ('processing', 'retrying')
        - started_at < threshold, OR started_at IS NULL AND updated_at < threshold
        - LIMIT: safety cap on the batch size

        Args:
            threshold: Jobs older than this are considered stuck
            limit: Maximum number of ids to return

        Returns:
            List of stuck job ids, oldest first
        """
        result = await self.session.execute(
            select(Job.id)
            .where(Job.status.in_(list(ACTIVE_STATUSES)))  # type: ignore[attr-defined]
            .where(
                or_(
                    Job.started_at < threshold,  # type: ignore[operator]
                    and_(Job.started_at.is_(None), Job.updated_at < threshold),  # type: ignore[union-attr]
                )
            )
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def fail_active(
        self,
        job_ids: Sequence[UUID],
        error: str,
        error_code: str,
    ) -> int:
        """Force-fail the given jobs, but only those still in an active status.

        The status predicate is re-asserted in the UPDATE so a job completed by a
        worker between selection and update is left untouched.

        Args:
            job_ids: Ids previously selected by :meth:`get_stuck_ids`
            error: Error message to store
            error_code: Machine-readable error tag

        Returns:
            Number of jobs actually updated
        """
        if not job_ids:
            return 0
        now = utcnow()
        result = await self.session.execute(
            update(Job)
            .where(Job.id.in_(list(job_ids)))  # type: ignore[attr-defined]
            .where(Job.status.in_(list(source_statuses(JobStatus.FAILED))))  # type: ignore[attr-defined]
            .values(
                status=JobStatus.FAILED,
                error=error,
                error_code=error_code,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def delete_many(self, job_ids: Sequence[UUID]) -> int:
        """Delete jobs by id list (idempotent).

        Args:
            job_ids: Ids of the jobs to delete

        Returns:
            Number of rows deleted
        """
        if not job_ids:
            return 0
        result = await self.session.execute(
            delete(Job).where(Job.id.in_(list(job_ids)))  # type: ignore[attr-defined]
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
