"""Versioned schema and merge helpers for ``Job.execution_metadata``.

The metadata document is additive: writers merge new keys into the existing
document and append to ``steps``; nothing is ever removed.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from retouch.core.timezone import epoch_ms

METADATA_SCHEMA_VERSION = 1


class Step(BaseModel):
    """One entry of the chronological progress log."""

    name: str
    start_time: int


class ExecutionMetadata(BaseModel):
    """Schema of the JSON document stored in ``Job.execution_metadata``.

    Unknown keys are preserved so older and newer writers can coexist.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = METADATA_SCHEMA_VERSION
    queued_at: str
    content_hash: str
    seed: int
    steps: list[Step] = Field(default_factory=list)

    idempotency_key: Optional[str] = None
    session_id: Optional[str] = None
    photo_id: Optional[str] = None
    worker_url: Optional[str] = None
    host_header: Optional[str] = None
    dispatcher: Optional[str] = None
    strength: Optional[float] = None
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None
    reference_image_urls: Optional[list[str]] = None
    model: Optional[str] = None

    retry_count: int = 0
    is_cooling_down: bool = False
    queue_retry: int = 0

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def merge_metadata(base: Optional[dict[str, Any]], updates: dict[str, Any]) -> dict[str, Any]:
    """Return a new document with ``updates`` merged over ``base``.

    ``steps`` is never replaced by an update; use :func:`append_step`.
    A fresh dict is always returned so SQLAlchemy detects the change.
    """
    merged = dict(base or {})
    for key, value in updates.items():
        if key == "steps":
            continue
        merged[key] = value
    merged["steps"] = list((base or {}).get("steps") or [])
    return merged


def append_step(
    base: Optional[dict[str, Any]],
    name: str,
    start_time: Optional[int] = None,
    **updates: Any,
) -> dict[str, Any]:
    """Return a new document with a ``{name, start_time}`` step appended.

    Extra keyword arguments are merged into the document in the same write.
    """
    merged = merge_metadata(base, updates)
    step = Step(name=name, start_time=start_time if start_time is not None else epoch_ms())
    merged["steps"].append(step.model_dump())
    return merged


def current_step(metadata: Optional[dict[str, Any]]) -> Optional[str]:
    """Name of the most recent step, or None when no step was recorded."""
    steps = (metadata or {}).get("steps") or []
    if not steps:
        return None
    return steps[-1].get("name")
