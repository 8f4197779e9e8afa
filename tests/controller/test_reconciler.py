"""Tests for the reconciler control loop.

Scenarios drive ``service.reconcile_once()`` against in-memory capabilities
and assert on the repository, the runtime and the published specs.
"""

from __future__ import annotations

import time
from datetime import timedelta

import pytest

from jobcontroller.catalog.memory import InMemoryCatalog
from jobcontroller.controller.service import JobControllerService
from jobcontroller.core.errors import JobNotFoundError, RepositoryError
from jobcontroller.core.events import ACK_EVENT, Event
from jobcontroller.core.identity import job_key, key_for_job
from jobcontroller.core.locks import job_lock_key
from jobcontroller.core.models import VERSION_LABEL, DeliveryState, FeatureSetStatus, JobStatus, Source
from jobcontroller.core.versioning import encode_version
from jobcontroller.repositories.memory import InMemoryJobRepository
from jobcontroller.runtime.memory import InMemoryJobManager
from tests._support.builders import (
    DEFAULT_SOURCE,
    OTHER_SOURCE,
    ack,
    make_feature_set,
    make_job,
    make_settings,
    make_store,
    published_versions,
)


def running(service):
    return service.list_jobs(JobStatus.RUNNING)


def assert_at_most_one_running_per_key(service):
    keys = [key_for_job(job, service.settings.consolidate_jobs_per_source) for job in running(service)]
    assert len(keys) == len(set(keys))


class FailingAddRepository(InMemoryJobRepository):
    def __init__(self) -> None:
        super().__init__()
        self.fail_adds = 0

    def add(self, job):
        if self.fail_adds > 0:
            self.fail_adds -= 1
            raise RepositoryError("database unavailable")
        super().add(job)


class SlowJobManager(InMemoryJobManager):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def start_job(self, job):
        time.sleep(self.delay)
        return super().start_job(job)


class BrokenCatalog(InMemoryCatalog):
    def list_feature_sets(self, filter=None):
        raise RuntimeError("catalog connection reset")


# ── Scenarios ──────────────────────────────────────────────────────────────


class TestScenarios:
    @pytest.mark.asyncio
    async def test_new_feature_set_starts_one_job(self, service, catalog, bus):
        """A new feature set with a fresh source yields exactly one job."""
        catalog.apply_feature_set(make_feature_set())

        report = await service.reconcile_once()

        jobs = running(service)
        assert len(jobs) == 1
        job = jobs[0]
        assert report.started == [job.id]
        assert len(job.stores) == 1
        assert len(job.feature_set_delivery_statuses) == 1
        assert job.source == DEFAULT_SOURCE
        assert job.labels[VERSION_LABEL] == encode_version("1.0.0")
        assert job.external_id == f"mem-{job.id}"

        entry = job.feature_set_delivery_statuses["default/test"]
        assert entry.version == 1
        assert entry.state is DeliveryState.IN_PROGRESS
        assert published_versions(bus) == [1]
        assert catalog.get_feature_set("default/test").status is FeatureSetStatus.PENDING

    @pytest.mark.asyncio
    async def test_added_store_updates_job_in_place(self, service, catalog, job_manager):
        """A second allowed store grows the existing job's stores."""
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (before,) = running(service)

        catalog.apply_store(make_store("new-store"))
        report = await service.reconcile_once()

        (after,) = running(service)
        assert after.id == before.id
        assert set(after.stores) == {"test-store", "new-store"}
        assert len(after.feature_set_delivery_statuses) == 1
        assert after.feature_set_delivery_statuses == before.feature_set_delivery_statuses
        assert report.updated == [after.id]
        assert report.started == []
        assert report.notified == []
        assert set(job_manager.list_running_jobs()[0].stores) == {"test-store", "new-store"}

    @pytest.mark.asyncio
    async def test_source_change_replaces_job(self, service, catalog, bus):
        """A changed source aborts the old job and publishes version + 1."""
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (old,) = running(service)

        catalog.apply_feature_set(make_feature_set(source=OTHER_SOURCE))
        report = await service.reconcile_once()

        assert service.get_job(old.id).status is JobStatus.ABORTED
        (new,) = running(service)
        assert new.id != old.id
        assert new.source == OTHER_SOURCE
        assert key_for_job(new) == job_key(OTHER_SOURCE)
        assert report.retired == [old.id]
        assert report.finalized == [old.id]
        assert report.started == [new.id]
        assert published_versions(bus) == [1, 2]
        assert new.feature_set_delivery_statuses["default/test"].version == 2

    @pytest.mark.asyncio
    async def test_outdated_version_label_is_replaced(self, service, catalog, job_manager, repository):
        """A job stamped 0.9.9 under controller 1.0.0 is replaced."""
        catalog.apply_feature_set(make_feature_set())
        outdated = make_job("kafka-outdated", controller_version="0.9.9", feature_sets={"default/test": 0})
        repository.add(outdated)
        job_manager.start_job(outdated)

        report = await service.reconcile_once()

        assert report.upgraded == ["kafka-outdated"]
        assert service.get_job("kafka-outdated").status is JobStatus.ABORTED
        assert job_manager.get_job_status(outdated) is JobStatus.ABORTED

        (replacement,) = running(service)
        assert replacement.id != "kafka-outdated"
        assert replacement.controller_version == "1.0.0"
        assert replacement.source == outdated.source
        assert replacement.stores == outdated.stores

    @pytest.mark.asyncio
    async def test_preregistered_job_without_entries_is_adopted(self, service, catalog, job_manager, repository):
        """A current-version job for the source is updated in place, not replaced."""
        catalog.apply_feature_set(make_feature_set())
        existing = make_job("kafka-existing")
        repository.add(existing)
        job_manager.start_job(existing)

        report = await service.reconcile_once()

        (job,) = running(service)
        assert job.id == "kafka-existing"
        assert report.updated == ["kafka-existing"]
        assert job.feature_set_delivery_statuses["default/test"].version == 1


# ── Properties ───────────────────────────────────────────────────────────


class TestConvergence:
    @pytest.mark.asyncio
    async def test_idempotent_after_steady_state(self, service, catalog, job_manager, bus):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()

        for _ in range(3):
            report = await service.reconcile_once()
            assert not report.changed
            assert report.failures == []

        assert job_manager.calls["start_job"] == 1
        assert job_manager.calls["abort_job"] == 0
        assert published_versions(bus) == [1]

    @pytest.mark.asyncio
    async def test_schema_change_is_republished(self, service, catalog, bus):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (job,) = running(service)

        catalog.apply_feature_set(make_feature_set(features={"trips_today": "INT32", "rating": "FLOAT"}))
        report = await service.reconcile_once()

        assert report.notified == [f"{job.id}:default/test@2"]
        assert report.started == []
        assert published_versions(bus) == [1, 2]
        assert bus.published(key="default/test")[-1].payload["features"][0]["name"] == "rating"

    @pytest.mark.asyncio
    async def test_at_most_one_running_job_per_source(self, service, catalog):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        assert_at_most_one_running_per_key(service)

        for change in (
            lambda: catalog.apply_store(make_store("new-store")),
            lambda: catalog.apply_feature_set(make_feature_set(source=OTHER_SOURCE)),
            lambda: catalog.apply_feature_set(make_feature_set("test", source=DEFAULT_SOURCE)),
            lambda: catalog.delete_store("new-store"),
        ):
            change()
            await service.reconcile_once()
            assert_at_most_one_running_per_key(service)
            assert len(running(service)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_running_jobs_collapse_to_oldest(self, service, catalog, job_manager, repository):
        catalog.apply_feature_set(make_feature_set())
        older = make_job("kafka-older", feature_sets={"default/test": 0})
        newer = make_job("kafka-newer", feature_sets={"default/test": 0})
        newer.created_at = older.created_at + timedelta(seconds=1)
        for job in (older, newer):
            repository.add(job)
            job_manager.start_job(job)

        report = await service.reconcile_once()

        assert report.retired == ["kafka-newer"]
        assert [job.id for job in running(service)] == ["kafka-older"]

    @pytest.mark.asyncio
    async def test_removed_feature_set_retires_job(self, service, catalog, job_manager):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (job,) = running(service)

        catalog.delete_feature_set("default/test")
        report = await service.reconcile_once()

        assert report.retired == [job.id]
        assert running(service) == []
        assert job_manager.list_running_jobs() == []

    @pytest.mark.asyncio
    async def test_retired_job_deleted_unless_kept(self, catalog, job_manager, repository, bus, locks):
        service = JobControllerService(
            make_settings(keep_aborted_jobs=False),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (job,) = running(service)

        catalog.delete_feature_set("default/test")
        await service.reconcile_once()

        assert repository.find_by_id(job.id) is None

    @pytest.mark.asyncio
    async def test_without_consolidation(self, catalog, job_manager, repository, bus, locks):
        service = JobControllerService(
            make_settings(
                consolidate_jobs_per_source=False,
                feature_set_selectors=[{"project": "default", "name": "*"}],
            ),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set("a"))
        catalog.apply_feature_set(make_feature_set("b"))

        first = await service.reconcile_once()
        second = await service.reconcile_once()

        jobs = running(service)
        assert len(jobs) == 2
        assert sorted(next(iter(job.feature_sets)) for job in jobs) == ["default/a", "default/b"]
        assert len(first.started) == 2
        assert not second.changed


# ── Operator commands ────────────────────────────────────────────────────


class TestRestart:
    @pytest.mark.asyncio
    async def test_restart_replaces_job(self, service, catalog, bus):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (old,) = running(service)

        service.restart_job(old.id)
        assert service.reconciler.pending_restarts == {old.id}
        report = await service.reconcile_once()

        (new,) = running(service)
        assert new.id != old.id
        assert new.stores == old.stores
        assert report.upgraded == [old.id]
        assert service.reconciler.pending_restarts == set()
        assert published_versions(bus) == [1, 2]

    def test_restart_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.restart_job("kafka-missing")

    @pytest.mark.asyncio
    async def test_restart_of_aborted_job_rejected(self, service, repository):
        repository.add(make_job("kafka-done", status=JobStatus.ABORTED))
        with pytest.raises(JobNotFoundError):
            service.restart_job("kafka-done")

    @pytest.mark.asyncio
    async def test_leased_job_is_skipped_and_not_duplicated(self, service, catalog, locks):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (job,) = running(service)
        service.restart_job(job.id)

        locks.acquire(job_lock_key(job.id))
        report = await service.reconcile_once()
        assert report.skipped == [job.id]
        assert report.started == []
        assert [j.id for j in running(service)] == [job.id]

        locks.release(job_lock_key(job.id))
        report = await service.reconcile_once()
        assert report.upgraded == [job.id]
        assert len(running(service)) == 1


# ── Failure handling ─────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_start_retried_next_tick(self, service, catalog, job_manager):
        catalog.apply_feature_set(make_feature_set())
        job_manager.fail_on("start_job")

        report = await service.reconcile_once()
        assert report.started == []
        assert [f["action"] for f in report.failures] == ["start"]
        assert running(service) == []

        report = await service.reconcile_once()
        assert len(report.started) == 1
        assert len(running(service)) == 1

    @pytest.mark.asyncio
    async def test_one_failed_start_does_not_block_others(self, catalog, job_manager, repository, bus, locks):
        service = JobControllerService(
            make_settings(feature_set_selectors=[{"project": "default", "name": "*"}]),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set("a"))
        catalog.apply_feature_set(make_feature_set("b", source=OTHER_SOURCE))
        job_manager.fail_on("start_job")

        report = await service.reconcile_once()

        assert len(report.started) == 1
        assert len(report.failures) == 1
        assert not report.aborted

    @pytest.mark.asyncio
    async def test_start_deadline_is_a_failed_action(self, catalog, repository, bus, locks):
        service = JobControllerService(
            make_settings(call_timeout_seconds=0.1),
            catalog=catalog,
            job_manager=SlowJobManager(delay=0.5),
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set())

        report = await service.reconcile_once()

        assert report.started == []
        assert "timed out" in report.failures[0]["error"]
        assert not report.aborted

    @pytest.mark.asyncio
    async def test_failed_abort_retried(self, service, catalog, job_manager):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (job,) = running(service)
        job_manager.fail_on("abort_job")

        catalog.delete_feature_set("default/test")
        report = await service.reconcile_once()
        assert report.retired == [job.id]
        assert service.get_job(job.id).status is JobStatus.ABORTING

        report = await service.reconcile_once()
        assert report.finalized == [job.id]
        assert service.get_job(job.id).status is JobStatus.ABORTED

    @pytest.mark.asyncio
    async def test_repository_failure_aborts_tick(self, catalog, job_manager, bus, locks):
        repository = FailingAddRepository()
        repository.fail_adds = 1
        service = JobControllerService(
            make_settings(),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set())

        report = await service.reconcile_once()
        assert report.aborted
        assert "database unavailable" in report.error
        assert job_manager.list_running_jobs() == []
        assert bus.published() == []

        report = await service.reconcile_once()
        assert not report.aborted
        assert len(report.started) == 1
        assert len(job_manager.list_running_jobs()) == 1
        assert service.reconciler.stats.aborted_ticks == 1

    @pytest.mark.asyncio
    async def test_publish_failure_renotifies_with_new_version(self, service, catalog, bus):
        catalog.apply_feature_set(make_feature_set())
        bus.fail_next = 1

        report = await service.reconcile_once()
        assert [f["action"] for f in report.failures] == ["notify"]
        (job,) = running(service)
        assert job.feature_set_delivery_statuses["default/test"].fingerprint is None

        report = await service.reconcile_once()
        assert report.notified == [f"{job.id}:default/test@2"]
        assert published_versions(bus) == [2]

    @pytest.mark.asyncio
    async def test_job_lost_by_runtime_is_replaced(self, service, catalog, job_manager):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (lost,) = running(service)

        job_manager.clean_all()
        report = await service.reconcile_once()

        assert report.lost == [lost.id]
        assert service.get_job(lost.id).status is JobStatus.ABORTED
        (replacement,) = running(service)
        assert report.started == [replacement.id]

    @pytest.mark.asyncio
    async def test_status_failure_keeps_job(self, service, catalog, job_manager):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        job_manager.fail_on("get_job_status")

        report = await service.reconcile_once()

        assert [f["action"] for f in report.failures] == ["status"]
        assert len(running(service)) == 1
        assert report.started == []

    @pytest.mark.asyncio
    async def test_invalid_source_isolated(self, service, catalog, repository):
        catalog.apply_feature_set(make_feature_set())
        repository.add(make_job("kafka-broken", source=Source("", "topic")))

        report = await service.reconcile_once()

        assert report.failures[0]["action"] == "identify"
        assert len(report.started) == 1


    @pytest.mark.asyncio
    async def test_catalog_failure_aborts_tick(self, job_manager, repository, bus, locks):
        service = JobControllerService(
            make_settings(),
            catalog=BrokenCatalog(),
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )

        report = await service.reconcile_once()

        assert report.aborted
        assert "catalog connection reset" in report.error
        assert running(service) == []


class TestAsyncAbort:
    @pytest.mark.asyncio
    async def test_aborting_job_finalized_once_confirmed(self, catalog, repository, bus, locks):
        job_manager = InMemoryJobManager(abort_is_async=True)
        service = JobControllerService(
            make_settings(),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (job,) = running(service)

        catalog.delete_feature_set("default/test")
        report = await service.reconcile_once()
        assert report.retired == [job.id]
        assert report.finalized == []
        assert service.get_job(job.id).status is JobStatus.ABORTING

        report = await service.reconcile_once()
        assert report.finalized == []
        assert service.get_job(job.id).status is JobStatus.ABORTING

        job_manager.complete_aborts()
        report = await service.reconcile_once()
        assert report.finalized == [job.id]
        assert service.get_job(job.id).status is JobStatus.ABORTED

    @pytest.mark.asyncio
    async def test_replacement_not_blocked_by_pending_abort(self, catalog, repository, bus, locks):
        job_manager = InMemoryJobManager(abort_is_async=True)
        service = JobControllerService(
            make_settings(),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()
        (old,) = running(service)

        service.restart_job(old.id)
        report = await service.reconcile_once()

        assert service.get_job(old.id).status is JobStatus.ABORTING
        (new,) = running(service)
        assert report.started == [new.id]


class TestAckTimeout:
    @pytest.fixture()
    def impatient(self, catalog, job_manager, repository, bus, locks):
        return JobControllerService(
            make_settings(ack_timeout_seconds=0.05),
            catalog=catalog,
            job_manager=job_manager,
            repository=repository,
            bus=bus,
            locks=locks,
        )

    @pytest.mark.asyncio
    async def test_unrecorded_ack_leads_to_new_version(self, impatient, catalog, bus, locks):
        await bus.subscribe(ACK_EVENT, impatient.tracker.handle_event)
        catalog.apply_feature_set(make_feature_set())
        await impatient.reconcile_once()
        (job,) = running(impatient)
        assert published_versions(bus) == [1]

        locks.acquire(job_lock_key(job.id))
        await bus.publish(Event(ACK_EVENT, "ingestion-job", payload=ack("default/test", 1, job.id)))
        locks.release(job_lock_key(job.id))
        assert catalog.get_feature_set("default/test").status is FeatureSetStatus.PENDING

        time.sleep(0.1)
        report = await impatient.reconcile_once()

        assert published_versions(bus) == [1, 2]
        assert report.notified == [f"{job.id}:default/test@2"]

        await bus.publish(Event(ACK_EVENT, "ingestion-job", payload=ack("default/test", 2, job.id)))
        assert catalog.get_feature_set("default/test").status is FeatureSetStatus.READY

        await impatient.reconcile_once()
        assert published_versions(bus) == [1, 2]

    @pytest.mark.asyncio
    async def test_recent_spec_not_republished(self, service, catalog, bus):
        catalog.apply_feature_set(make_feature_set())
        await service.reconcile_once()

        report = await service.reconcile_once()

        assert report.notified == []
        assert published_versions(bus) == [1]
