"""Job runtime capability.

How a physical ingestion job executes varies by deployment target, so the
runtime is a capability interface with swappable implementations rather
than a class hierarchy. Every call may block or fail; the reconciler runs
them under a deadline and treats failures as retryable per action.

Modules
-------
memory      InMemoryJobManager -- in-process fake runtime with failure injection
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from jobcontroller.core.models import Job, JobStatus

__all__ = ["JobManager"]


@runtime_checkable
class JobManager(Protocol):
    """Capability interface of the job runtime."""

    def start_job(self, job: Job) -> Job:
        """Launch *job*. Returns the job with its runtime handle (``external_id``) set.

        Raises:
            JobManagerError: If the runtime refused or failed to start the job
        """
        ...

    def update_job(self, job: Job) -> Job:
        """Apply an in-place change (stores, served feature sets) to a running job."""
        ...

    def abort_job(self, job: Job) -> None:
        """Request termination. Idempotent: aborting a dead job is not an error."""
        ...

    def get_job_status(self, job: Job) -> JobStatus:
        ...

    def list_running_jobs(self) -> list[Job]:
        ...
