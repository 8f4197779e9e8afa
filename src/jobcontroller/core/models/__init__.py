"""Typed dataclass models for catalog objects and job records."""

from jobcontroller.core.models.catalog import (
    FeatureSet,
    FeatureSetRef,
    FeatureSetStatus,
    Source,
    SourceType,
    Store,
    Subscription,
)
from jobcontroller.core.models.jobs import (
    VERSION_LABEL,
    DeliveryState,
    FeatureSetDeliveryStatus,
    Job,
    JobSpec,
    JobStatus,
    utcnow,
)

__all__ = [
    "FeatureSet",
    "FeatureSetRef",
    "FeatureSetStatus",
    "Source",
    "SourceType",
    "Store",
    "Subscription",
    "VERSION_LABEL",
    "DeliveryState",
    "FeatureSetDeliveryStatus",
    "Job",
    "JobSpec",
    "JobStatus",
    "utcnow",
]
