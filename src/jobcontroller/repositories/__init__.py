"""Job repository capability.

Job records are mutated by the reconciler and the delivery tracker
concurrently. ``update`` is an optimistic compare-and-swap on
``Job.revision``: it succeeds only if the stored record has not changed
since it was read, and bumps the revision on success.

Modules
-------
base        BaseRepository -- SQL helpers over a DB-API connection
memory      InMemoryJobRepository
sqlite      SqliteJobRepository
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from jobcontroller.core.models import Job, JobStatus

__all__ = ["JobRepository"]


@runtime_checkable
class JobRepository(Protocol):
    """Capability interface for persisting job records."""

    def add(self, job: Job) -> None:
        """Insert a new job record.

        Raises:
            RepositoryError: If a job with the same id exists or the write failed
        """
        ...

    def find_by_id(self, job_id: str) -> Job | None:
        ...

    def find_by_status(self, status: JobStatus) -> list[Job]:
        ...

    def find_all(self) -> list[Job]:
        ...

    def update(self, job: Job) -> None:
        """Replace the stored record if its revision still equals ``job.revision``.

        On success ``job.revision`` and ``job.updated_at`` are advanced in place.

        Raises:
            ConcurrentModificationError: If the stored revision differs
            JobNotFoundError: If the job does not exist
            RepositoryError: If the write failed
        """
        ...

    def delete(self, job_id: str) -> bool:
        ...

    def delete_all(self) -> None:
        ...
