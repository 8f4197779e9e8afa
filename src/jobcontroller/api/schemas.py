"""
API schemas -- response envelopes, RFC 7807 errors and job views.

Every endpoint returns either :class:`SuccessResponse` / :class:`PagedResponse`
(2xx) or :class:`ProblemDetail` (4xx/5xx).

Doc-Types: API_REFERENCE
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from jobcontroller.core.models import Job

T = TypeVar("T")


class ProblemDetail(BaseModel):
    """RFC 7807 «Problem Details for HTTP APIs».

    Error Codes:
        - ``NOT_FOUND`` (404): Job does not exist or is not running
        - ``TRANSIENT`` (503): Capability temporarily unavailable
        - ``INTERNAL`` (500): Unexpected server error
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str = ""
    instance: str = ""


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class SuccessResponse(BaseModel, Generic[T]):
    """Standard success envelope for single-item responses."""

    data: T
    elapsed_ms: float = 0.0
    warnings: list[str] = Field(default_factory=list)


class PagedResponse(BaseModel, Generic[T]):
    """Success envelope for list responses."""

    data: list[T]
    page: PageMeta
    elapsed_ms: float = 0.0
    warnings: list[str] = Field(default_factory=list)


class DeliveryStatusSchema(BaseModel):
    version: int
    state: str
    fingerprint: str | None = None


class JobSummarySchema(BaseModel):
    """One row of the jobs table."""

    id: str
    status: str
    source_topic: str
    bootstrap_servers: str
    stores: list[str]
    feature_sets: list[str]
    controller_version: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> JobSummarySchema:
        return cls(
            id=job.id,
            status=job.status.value,
            source_topic=job.source.topic,
            bootstrap_servers=job.source.bootstrap_servers,
            stores=sorted(job.stores),
            feature_sets=sorted(job.feature_sets),
            controller_version=job.controller_version,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobDetailSchema(JobSummarySchema):
    """Full job record including labels and per-feature-set delivery status."""

    external_id: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    source: dict[str, Any] = Field(default_factory=dict)
    delivery_statuses: dict[str, DeliveryStatusSchema] = Field(default_factory=dict)
    revision: int = 0

    @classmethod
    def from_job(cls, job: Job) -> JobDetailSchema:
        summary = JobSummarySchema.from_job(job).model_dump()
        return cls(
            **summary,
            external_id=job.external_id,
            labels=dict(job.labels),
            source=job.source.to_dict(),
            delivery_statuses={
                reference: DeliveryStatusSchema(**entry.to_dict())
                for reference, entry in job.feature_set_delivery_statuses.items()
            },
            revision=job.revision,
        )


class RestartAccepted(BaseModel):
    job_id: str
    status: str = "restart_requested"


class HealthSchema(BaseModel):
    status: str
    controller_version: str
    scheduler: dict[str, Any] = Field(default_factory=dict)
    reconciler: dict[str, Any] = Field(default_factory=dict)
    notifier: dict[str, Any] = Field(default_factory=dict)
    tracker: dict[str, Any] = Field(default_factory=dict)
    last_report: dict[str, Any] | None = None
