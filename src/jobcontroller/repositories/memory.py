"""In-memory job repository (thread-safe, copy-on-read/write)."""

from __future__ import annotations

import threading

from jobcontroller.core.errors import (
    ConcurrentModificationError,
    ErrorContext,
    JobNotFoundError,
    RepositoryError,
)
from jobcontroller.core.models import Job, JobStatus
from jobcontroller.core.models.jobs import utcnow


class InMemoryJobRepository:
    """Dictionary-backed repository for single-process deployments and tests."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise RepositoryError(
                    f"Job already exists: {job.id}",
                    context=ErrorContext(job_id=job.id, operation="add"),
                )
            self._jobs[job.id] = job.copy()

    def find_by_id(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job is not None else None

    def find_by_status(self, status: JobStatus) -> list[Job]:
        with self._lock:
            return [job.copy() for job in self._jobs.values() if job.status is status]

    def find_all(self) -> list[Job]:
        with self._lock:
            return [job.copy() for job in self._jobs.values()]

    def update(self, job: Job) -> None:
        with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise JobNotFoundError(job.id)
            if stored.revision != job.revision:
                raise ConcurrentModificationError(
                    f"Job {job.id} changed (revision {stored.revision}, expected {job.revision})",
                    context=ErrorContext(job_id=job.id, operation="update"),
                )
            job.revision += 1
            job.updated_at = utcnow()
            self._jobs[job.id] = job.copy()

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def delete_all(self) -> None:
        with self._lock:
            self._jobs.clear()
