"""
Shared pytest fixtures for jobcontroller tests.

This module provides:
- Controller settings tuned for fast, deterministic ticks
- In-memory capabilities (catalog, runtime, repository, event bus, leases)
- A fully wired ``JobControllerService`` that is never started
- A fake ingestion job that acks every spec it receives

Builders for catalog objects and job records live in
``tests._support.builders``.

Usage:
    Fixtures are auto-discovered by pytest::

        @pytest.mark.asyncio
        async def test_something(service, catalog):
            catalog.apply_feature_set(make_feature_set())
            report = await service.reconcile_once()
"""

from __future__ import annotations

import pytest

from jobcontroller.catalog.memory import InMemoryCatalog
from jobcontroller.controller.service import JobControllerService
from jobcontroller.core.events import ACK_EVENT, SPEC_EVENT, Event
from jobcontroller.core.locks import LockManager
from jobcontroller.core.models import JobStatus
from jobcontroller.core.settings import ControllerSettings
from jobcontroller.repositories.memory import InMemoryJobRepository
from jobcontroller.runtime.memory import InMemoryJobManager
from tests._support.builders import FlakyEventBus, ack, make_settings, make_store


@pytest.fixture()
def settings() -> ControllerSettings:
    return make_settings()


@pytest.fixture()
def catalog() -> InMemoryCatalog:
    """Catalog with the default store declared and no feature sets."""
    catalog = InMemoryCatalog()
    catalog.apply_store(make_store())
    return catalog


@pytest.fixture()
def job_manager() -> InMemoryJobManager:
    return InMemoryJobManager()


@pytest.fixture()
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture()
def bus() -> FlakyEventBus:
    return FlakyEventBus()


@pytest.fixture()
def locks() -> LockManager:
    return LockManager(default_ttl_seconds=30.0, instance_id="test")


@pytest.fixture()
def service(settings, catalog, job_manager, repository, bus, locks) -> JobControllerService:
    """Wired controller; tests drive ticks with ``await service.reconcile_once()``."""
    return JobControllerService(
        settings,
        catalog=catalog,
        job_manager=job_manager,
        repository=repository,
        bus=bus,
        locks=locks,
    )


@pytest.fixture()
def acking_job(service, bus):
    """Returns a coroutine function that wires a fake ingestion job to the bus.

    The fake job acks every spec with the id of the RUNNING job serving the
    feature set, the way a real job acks with its own id. Acks are routed to
    the service's delivery tracker.
    """

    async def on_spec(event: Event) -> None:
        for job in service.list_jobs(JobStatus.RUNNING):
            if event.key in job.feature_sets:
                await bus.publish(
                    Event(
                        event_type=ACK_EVENT,
                        source="ingestion-job",
                        key=event.key,
                        payload=ack(event.key, event.payload["version"], job.id),
                    )
                )

    async def _subscribe() -> None:
        await bus.subscribe(SPEC_EVENT, on_spec)
        await bus.subscribe(ACK_EVENT, service.tracker.handle_event)

    return _subscribe
