"""In-memory job runtime.

Keeps "physical" jobs in a dictionary keyed by job id. ``fail_on`` lets
tests make the next N calls of an operation fail, and ``abort_is_async``
leaves aborted jobs in ``ABORTING`` until :meth:`complete_aborts` is called,
mimicking a runtime where termination takes a while.
"""

from __future__ import annotations

import threading
from collections import Counter

from jobcontroller.core.errors import ErrorContext, JobManagerError
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import Job, JobStatus

logger = get_logger(__name__)


class InMemoryJobManager:
    """Fake runtime for single-process deployments and tests."""

    def __init__(self, abort_is_async: bool = False) -> None:
        self.abort_is_async = abort_is_async
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._failures: Counter[str] = Counter()
        self.calls: Counter[str] = Counter()

    def fail_on(self, operation: str, times: int = 1) -> None:
        """Make the next *times* calls of *operation* raise ``JobManagerError``."""
        with self._lock:
            self._failures[operation] += times

    def _check(self, operation: str, job: Job) -> None:
        self.calls[operation] += 1
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise JobManagerError(
                f"Injected {operation} failure",
                context=ErrorContext(job_id=job.id, operation=operation),
            )

    def start_job(self, job: Job) -> Job:
        with self._lock:
            self._check("start_job", job)
            started = job.copy()
            started.external_id = f"mem-{job.id}"
            started.status = JobStatus.RUNNING
            self._jobs[job.id] = started
        logger.info("runtime_job_started", job_id=job.id)
        return started.copy()

    def update_job(self, job: Job) -> Job:
        with self._lock:
            self._check("update_job", job)
            current = self._jobs.get(job.id)
            if current is None or current.status is not JobStatus.RUNNING:
                raise JobManagerError(
                    f"Job {job.id} is not running",
                    context=ErrorContext(job_id=job.id, operation="update_job"),
                )
            current.stores = dict(job.stores)
            current.feature_set_delivery_statuses = job.copy().feature_set_delivery_statuses
            return current.copy()

    def abort_job(self, job: Job) -> None:
        with self._lock:
            self._check("abort_job", job)
            current = self._jobs.get(job.id)
            if current is None or current.status is JobStatus.ABORTED:
                return
            current.status = JobStatus.ABORTING if self.abort_is_async else JobStatus.ABORTED
        logger.info("runtime_job_aborted", job_id=job.id)

    def complete_aborts(self) -> None:
        """Finish every pending asynchronous abort."""
        with self._lock:
            for job in self._jobs.values():
                if job.status is JobStatus.ABORTING:
                    job.status = JobStatus.ABORTED

    def get_job_status(self, job: Job) -> JobStatus:
        """Status of *job*; a job the runtime never saw counts as ``ABORTED``."""
        with self._lock:
            self._check("get_job_status", job)
            current = self._jobs.get(job.id)
            return current.status if current is not None else JobStatus.ABORTED

    def list_running_jobs(self) -> list[Job]:
        with self._lock:
            return [job.copy() for job in self._jobs.values() if job.status is JobStatus.RUNNING]

    def get_all_jobs(self) -> list[Job]:
        with self._lock:
            return [job.copy() for job in self._jobs.values()]

    def clean_all(self) -> None:
        with self._lock:
            self._jobs.clear()
