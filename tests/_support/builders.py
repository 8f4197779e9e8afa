"""Builders for catalog objects, job records and acks used across tests."""

from __future__ import annotations

from typing import Any

from jobcontroller.core.errors import ChannelError
from jobcontroller.core.events import SPEC_EVENT, Event
from jobcontroller.core.events.memory import InMemoryEventBus
from jobcontroller.core.models import (
    VERSION_LABEL,
    FeatureSet,
    FeatureSetDeliveryStatus,
    Job,
    JobStatus,
    Source,
    Store,
    Subscription,
)
from jobcontroller.core.settings import ControllerSettings
from jobcontroller.core.versioning import encode_version

CONTROLLER_VERSION = "1.0.0"
DEFAULT_SOURCE = Source("localhost:9092", "feature-events")
OTHER_SOURCE = Source("localhost:9092", "feature-events-v2")


def make_settings(**overrides: Any) -> ControllerSettings:
    values: dict[str, Any] = {
        "controller_version": CONTROLLER_VERSION,
        "polling_interval_ms": 50,
        "call_timeout_seconds": 2.0,
        "feature_set_selectors": [{"project": "default", "name": "test"}],
        "whitelisted_stores": ["test-store", "new-store"],
        "keep_aborted_jobs": True,
        "ack_lock_wait_seconds": 0.05,
    }
    values.update(overrides)
    return ControllerSettings(**values)


def make_store(name: str = "test-store", project: str = "default", pattern: str = "*") -> Store:
    return Store(name=name, subscriptions=(Subscription(project, pattern),))


def make_feature_set(
    name: str = "test",
    project: str = "default",
    source: Source = DEFAULT_SOURCE,
    features: dict[str, str] | None = None,
) -> FeatureSet:
    return FeatureSet(
        project=project,
        name=name,
        source=source,
        entities={"driver_id": "INT64"},
        features=features if features is not None else {"trips_today": "INT32"},
    )


def make_job(
    job_id: str = "kafka-preexisting",
    *,
    source: Source = DEFAULT_SOURCE,
    stores: dict[str, Store] | None = None,
    controller_version: str = CONTROLLER_VERSION,
    feature_sets: dict[str, int] | None = None,
    status: JobStatus = JobStatus.RUNNING,
) -> Job:
    """A job record as another controller instance would have created it."""
    return Job(
        id=job_id,
        source=source,
        stores=stores if stores is not None else {"test-store": make_store()},
        labels={VERSION_LABEL: encode_version(controller_version)},
        status=status,
        feature_set_delivery_statuses={
            reference: FeatureSetDeliveryStatus(version=version)
            for reference, version in (feature_sets or {}).items()
        },
    )


def ack(reference: str, version: int, job_id: str) -> dict[str, Any]:
    return {"feature_set_reference": reference, "feature_set_version": version, "job_id": job_id}


def published_versions(bus: InMemoryEventBus, reference: str = "default/test") -> list[int]:
    return [event.payload["version"] for event in bus.published(SPEC_EVENT, key=reference)]


class FlakyEventBus(InMemoryEventBus):
    """In-memory bus whose next ``fail_next`` publishes raise ``ChannelError``."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_next = 0

    async def publish(self, event: Event) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ChannelError("Broker unavailable").with_context(event_type=event.event_type)
        await super().publish(event)
