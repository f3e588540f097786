"""Repository layer for the retouch backend.

Provides data access abstractions for domain entities.
"""

from retouch.repositories.job import JobRepository

__all__ = [
    "JobRepository",
]
