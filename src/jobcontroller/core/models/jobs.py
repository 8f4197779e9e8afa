"""Job models: the controller's unit of reconciliation.

Manifesto:
    A ``Job`` record is the controller's view of one physical ingestion
    pipeline. It is mutated by two concurrent activities (the reconciler
    and the delivery tracker), so every record carries a ``revision`` that
    repositories check on update.

Tags:
    jobcontroller, models, jobs, dataclasses, optimistic-concurrency

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from jobcontroller.core.errors import InvalidVersionError
from jobcontroller.core.models.catalog import FeatureSet, Source, Store
from jobcontroller.core.versioning import decode_version

VERSION_LABEL = "jobcontroller-version"


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job lifecycle. ``ABORTED`` is terminal."""

    RUNNING = "RUNNING"
    ABORTING = "ABORTING"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self is JobStatus.ABORTED


class DeliveryState(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"


@dataclass
class FeatureSetDeliveryStatus:
    """Last spec version sent to (or acknowledged by) a job for one feature set.

    ``sent_at`` is when the spec was last handed to the channel; an entry
    still IN_PROGRESS ``ack_timeout_seconds`` later has its spec sent again.
    """

    version: int
    state: DeliveryState = DeliveryState.IN_PROGRESS
    fingerprint: str | None = None
    sent_at: datetime | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "state": self.state.value,
            "fingerprint": self.fingerprint,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureSetDeliveryStatus:
        sent_at = data.get("sent_at")
        return cls(
            version=int(data["version"]),
            state=DeliveryState(data.get("state", DeliveryState.IN_PROGRESS.value)),
            fingerprint=data.get("fingerprint"),
            sent_at=datetime.fromisoformat(sent_at) if sent_at else None,
        )


@dataclass
class Job:
    """A controller-managed ingestion pipeline serving one source and a set of stores."""

    id: str
    source: Source
    stores: dict[str, Store] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    status: JobStatus = JobStatus.RUNNING
    feature_set_delivery_statuses: dict[str, FeatureSetDeliveryStatus] = field(
        default_factory=dict
    )
    external_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    revision: int = 0

    @property
    def controller_version(self) -> str | None:
        """Decoded version label, or None when missing or undecodable."""
        token = self.labels.get(VERSION_LABEL)
        if token is None:
            return None
        try:
            return decode_version(token)
        except InvalidVersionError:
            return None

    @property
    def feature_sets(self) -> set[str]:
        """References of the feature sets this job currently serves."""
        return set(self.feature_set_delivery_statuses)

    def copy(self) -> Job:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.to_dict(),
            "stores": {name: store.to_dict() for name, store in self.stores.items()},
            "labels": dict(self.labels),
            "status": self.status.value,
            "feature_set_delivery_statuses": {
                ref: status.to_dict() for ref, status in self.feature_set_delivery_statuses.items()
            },
            "external_id": self.external_id,
            "controller_version": self.controller_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            id=data["id"],
            source=Source.from_dict(data["source"]),
            stores={name: Store.from_dict(store) for name, store in data.get("stores", {}).items()},
            labels=dict(data.get("labels", {})),
            status=JobStatus(data.get("status", JobStatus.RUNNING.value)),
            feature_set_delivery_statuses={
                ref: FeatureSetDeliveryStatus.from_dict(status)
                for ref, status in data.get("feature_set_delivery_statuses", {}).items()
            },
            external_id=data.get("external_id"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else utcnow(),
            revision=int(data.get("revision", 0)),
        )


@dataclass
class JobSpec:
    """Desired job: one source, the union of subscribing stores, the feature sets served."""

    key: str
    source: Source
    stores: dict[str, Store] = field(default_factory=dict)
    feature_sets: dict[str, FeatureSet] = field(default_factory=dict)  # ref -> FeatureSet
