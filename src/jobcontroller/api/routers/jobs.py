"""
Jobs router -- operator view of controller-managed jobs.

GET    /jobs
GET    /jobs/{job_id}
POST   /jobs/{job_id}/restart
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Path, Query

from jobcontroller.api.deps import Service
from jobcontroller.api.schemas import (
    JobDetailSchema,
    JobSummarySchema,
    PagedResponse,
    PageMeta,
    RestartAccepted,
    SuccessResponse,
)
from jobcontroller.core.models import JobStatus

router = APIRouter(prefix="/jobs")


@router.get("", response_model=PagedResponse[JobSummarySchema])
def list_jobs(
    service: Service,
    status: JobStatus | None = Query(None, description="Filter by job status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """List jobs, oldest first.

    Example:
        GET /api/v1/jobs?status=RUNNING
    """
    start = time.monotonic()
    jobs = service.list_jobs(status)
    items = [JobSummarySchema.from_job(job) for job in jobs[offset : offset + limit]]
    return PagedResponse(
        data=items,
        page=PageMeta(total=len(jobs), limit=limit, offset=offset, has_more=offset + limit < len(jobs)),
        elapsed_ms=(time.monotonic() - start) * 1000,
    )


@router.get("/{job_id}", response_model=SuccessResponse[JobDetailSchema])
def get_job(service: Service, job_id: str = Path(..., description="Job ID")):
    """Get a job with its labels and per-feature-set delivery status.

    Raises:
        404 NOT_FOUND: No job with this id
    """
    start = time.monotonic()
    job = service.get_job(job_id)
    return SuccessResponse(
        data=JobDetailSchema.from_job(job),
        elapsed_ms=(time.monotonic() - start) * 1000,
    )


@router.post("/{job_id}/restart", status_code=202, response_model=SuccessResponse[RestartAccepted])
def restart_job(service: Service, job_id: str = Path(..., description="Job ID")):
    """Force a replacement of a RUNNING job on the next reconciliation tick.

    Raises:
        404 NOT_FOUND: No RUNNING job with this id
    """
    service.restart_job(job_id)
    return SuccessResponse(data=RestartAccepted(job_id=job_id))
