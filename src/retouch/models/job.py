"""Job entity - one photo enhancement request with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from retouch.core.timezone import utcnow


class JobStatus(str, Enum):
    """Job lifecycle status.

    Fine-grained progress (generating, saving, cooling down) lives in the
    ``steps`` log of ``execution_metadata``, not in this enum.
    """

    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses a worker may still be driving; the scavenger only touches these.
ACTIVE_STATUSES = (JobStatus.PROCESSING, JobStatus.RETRYING)

# Statuses a new submission may coalesce onto.
REUSABLE_STATUSES = (JobStatus.COMPLETED, JobStatus.PROCESSING, JobStatus.RETRYING)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobErrorCode(str, Enum):
    """Machine-readable failure tags stored in ``Job.error_code``."""

    DISPATCH_FAILED = "dispatch_failed"
    GENERATION_FAILED = "generation_failed"
    STORAGE_FAILED = "storage_failed"
    WORKER_EXCEPTION = "worker_exception"
    SCAVENGER_TIMEOUT = "scavenger_timeout"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


# Legal status moves. Entity guards and the repository's conditional
# updates both read this table.
TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PROCESSING: (JobStatus.RETRYING, JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.RETRYING: (JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.COMPLETED: (),
    JobStatus.FAILED: (),
}


def source_statuses(target: JobStatus) -> tuple[JobStatus, ...]:
    """Statuses a job may be in when it moves to ``target``."""
    return tuple(source for source, targets in TRANSITIONS.items() if target in targets)


class Job(SQLModel, table=True):
    """Job tracks one submitted generation request from creation to a terminal state."""

    __tablename__ = "jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    status: JobStatus = Field(default=JobStatus.PROCESSING, index=True)
    input_url: str = Field(default="")
    prompt: str = Field(default="")
    category: str = Field(default="other", max_length=50)
    user_id: Optional[str] = Field(default=None, max_length=255, index=True)
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    result_url: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    error_code: Optional[str] = Field(default=None, max_length=50)
    execution_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    # Timezone-aware UTC throughout
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def can_transition(self, target: JobStatus) -> bool:
        return target in TRANSITIONS[self.status]

    def ensure_transition(self, target: JobStatus) -> None:
        """Check that the job may move to ``target``.

        Raises:
            InvalidStateTransition: If the move is not in the transition table
        """
        if self.can_transition(target):
            return
        if self.status in TERMINAL_STATUSES:
            raise InvalidStateTransition(
                f"Cannot mark {target.value} from terminal state {self.status.value}."
            )
        raise InvalidStateTransition(
            f"Cannot mark {target.value} from {self.status.value}. "
            f"Job must be in {' or '.join(s.value for s in source_statuses(target))} state."
        )

    def mark_retrying(self) -> None:
        """Transition from processing to retrying (provider cooldown)."""
        self.ensure_transition(JobStatus.RETRYING)
        self.status = JobStatus.RETRYING
        self.updated_at = utcnow()

    def mark_processing(self) -> None:
        """Transition from retrying back to processing when the retry starts."""
        self.ensure_transition(JobStatus.PROCESSING)
        self.status = JobStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_completed(self, result_url: str) -> None:
        """Transition from an active state to completed.

        Args:
            result_url: Public URL of the stored result image

        Raises:
            InvalidStateTransition: If current status is not active
            ValueError: If result_url is empty
        """
        self.ensure_transition(JobStatus.COMPLETED)
        if not result_url:
            raise ValueError("result_url is required")
        now = utcnow()
        self.status = JobStatus.COMPLETED
        self.result_url = result_url
        self.error = None
        self.error_code = None
        self.finished_at = now
        self.updated_at = now

    def mark_failed(self, error: str, error_code: JobErrorCode | str | None = None) -> None:
        """Transition from an active state to failed.

        Args:
            error: Human-readable failure message
            error_code: Optional machine-readable failure tag

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        self.ensure_transition(JobStatus.FAILED)
        now = utcnow()
        self.status = JobStatus.FAILED
        self.error = error
        self.error_code = error_code.value if isinstance(error_code, JobErrorCode) else error_code
        self.result_url = None
        self.finished_at = now
        self.updated_at = now
