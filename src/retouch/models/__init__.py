"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from retouch.models.job import (
    ACTIVE_STATUSES,
    InvalidStateTransition,
    Job,
    JobErrorCode,
    JobStatus,
    TRANSITIONS,
    source_statuses,
)
from retouch.models.metadata import ExecutionMetadata, append_step, merge_metadata

__all__ = [
    "ACTIVE_STATUSES",
    "Job",
    "JobStatus",
    "JobErrorCode",
    "InvalidStateTransition",
    "TRANSITIONS",
    "source_statuses",
    "ExecutionMetadata",
    "append_step",
    "merge_metadata",
]
