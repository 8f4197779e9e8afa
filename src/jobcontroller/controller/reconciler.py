"""Reconciler: the control loop.

Manifesto:
    Convergence is level-triggered. Every tick recomputes what should be
    running from the catalog, compares it with the job records and issues
    the actions that close the gap. A failed action simply leaves the gap
    open and the next tick tries again, so no single failure is ever fatal
    to the loop.

┌──────────────────────────────────────────────────────────────────────┐
│  One tick                                                            │
│                                                                      │
│   desired  = assembler.desired()          keyed by job key           │
│   actual   = repository RUNNING + ABORTING                           │
│                                                                      │
│   finalize   ABORTING jobs the runtime reports ABORTED               │
│   lost       RUNNING jobs the runtime reports ABORTED                │
│   abort      no desired spec (retire), stale version label or        │
│              restart request (upgrade), duplicate key (retire)       │
│   start      desired keys without a surviving RUNNING job            │
│   in-place   stores / served feature sets changed, id unchanged      │
│   spec sync  notify where the delivery entry lags the catalog        │
└──────────────────────────────────────────────────────────────────────┘

Aborts are issued before starts and notifications within a tick, so a
replacement's specs are never sent while the job it replaces is still
RUNNING in the repository. Replacements do not wait for the runtime to
confirm termination; aborting is idempotent and ABORTING jobs are polled
until they are confirmed and removed.

Failure units:
    JobManager errors and deadlines   isolated to the action, retried next tick
    Channel / catalog CAS errors      isolated to the notification
    Repository errors                 abort the rest of the tick

Tags:
    jobcontroller, reconciler, control-loop, level-triggered, convergence

Doc-Types:
    api-reference, architecture
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from jobcontroller.catalog import CatalogSnapshot
from jobcontroller.controller.desired import DesiredStateAssembler
from jobcontroller.controller.notifier import SpecNotifier
from jobcontroller.core.errors import (
    CatalogError,
    ControllerError,
    ErrorContext,
    InvalidSourceError,
    JobManagerError,
    JobNotFoundError,
    RepositoryError,
    TransientError,
)
from jobcontroller.core.identity import key_for_job, new_job_id
from jobcontroller.core.locks import LockManager, job_lock_key
from jobcontroller.core.logging import LogContext, get_logger
from jobcontroller.core.models import (
    VERSION_LABEL,
    DeliveryState,
    FeatureSetDeliveryStatus,
    Job,
    JobSpec,
    JobStatus,
    utcnow,
)
from jobcontroller.core.settings import ControllerSettings
from jobcontroller.core.timeout import run_repository_call, run_with_timeout
from jobcontroller.core.versioning import encode_version
from jobcontroller.repositories import JobRepository
from jobcontroller.runtime import JobManager

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    """Actions taken (and failed) during one tick."""

    tick: int
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    desired: int = 0
    started: list[str] = field(default_factory=list)
    upgraded: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    finalized: list[str] = field(default_factory=list)
    lost: list[str] = field(default_factory=list)
    notified: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    aborted: bool = False
    error: str | None = None

    @property
    def changed(self) -> bool:
        """True if the tick started, stopped or changed any job."""
        return bool(
            self.started
            or self.upgraded
            or self.retired
            or self.updated
            or self.finalized
            or self.lost
            or self.notified
        )

    def fail(self, action: str, job_id: str | None, error: Exception) -> None:
        self.failures.append({"action": action, "job_id": job_id, "error": str(error)})
        logger.warning(
            "reconcile_action_failed",
            action=action,
            job_id=job_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick": self.tick,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "desired": self.desired,
            "started": self.started,
            "upgraded": self.upgraded,
            "retired": self.retired,
            "updated": self.updated,
            "finalized": self.finalized,
            "lost": self.lost,
            "notified": self.notified,
            "skipped": self.skipped,
            "failures": self.failures,
            "aborted": self.aborted,
            "error": self.error,
        }


@dataclass
class ReconcilerStats:
    """Cumulative counters across ticks."""

    ticks: int = 0
    aborted_ticks: int = 0
    jobs_started: int = 0
    jobs_upgraded: int = 0
    jobs_retired: int = 0
    jobs_updated: int = 0
    notifications: int = 0
    action_failures: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None

    def record(self, report: ReconcileReport) -> None:
        self.ticks += 1
        self.jobs_started += len(report.started)
        self.jobs_upgraded += len(report.upgraded)
        self.jobs_retired += len(report.retired)
        self.jobs_updated += len(report.updated)
        self.notifications += len(report.notified)
        self.action_failures += len(report.failures)
        self.last_tick_at = report.finished_at
        if report.aborted:
            self.aborted_ticks += 1
            self.last_error = report.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks": self.ticks,
            "aborted_ticks": self.aborted_ticks,
            "jobs_started": self.jobs_started,
            "jobs_upgraded": self.jobs_upgraded,
            "jobs_retired": self.jobs_retired,
            "jobs_updated": self.jobs_updated,
            "notifications": self.notifications,
            "action_failures": self.action_failures,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_error": self.last_error,
        }


class Reconciler:
    """Drives job records and the runtime towards the desired state.

    Example:
        >>> reconciler = Reconciler(assembler, job_manager, repository, notifier, locks, settings)
        >>> report = await reconciler.tick()
        >>> report.started
        ['kafka-3f2a9c1d0b7e-5d41402a']
    """

    def __init__(
        self,
        assembler: DesiredStateAssembler,
        job_manager: JobManager,
        repository: JobRepository,
        notifier: SpecNotifier,
        locks: LockManager,
        settings: ControllerSettings,
    ) -> None:
        self.assembler = assembler
        self.job_manager = job_manager
        self.repository = repository
        self.notifier = notifier
        self.locks = locks
        self.settings = settings
        self.controller_version = settings.controller_version
        self.version_label = encode_version(settings.controller_version)
        self.stats = ReconcilerStats()
        self.last_report: ReconcileReport | None = None
        self._tick_count = 0
        self._restart_requests: set[str] = set()
        self._restart_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def request_restart(self, job_id: str) -> Job:
        """Queue a forced upgrade of a RUNNING job for the next tick.

        Raises:
            JobNotFoundError: If no RUNNING job has this id
        """
        job = self.repository.find_by_id(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            raise JobNotFoundError(job_id)
        with self._restart_lock:
            self._restart_requests.add(job_id)
        logger.info("job_restart_requested", job_id=job_id)
        return job

    @property
    def pending_restarts(self) -> set[str]:
        with self._restart_lock:
            return set(self._restart_requests)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> ReconcileReport:
        """Run one reconciliation pass. Never raises for controller errors."""
        self._tick_count += 1
        report = ReconcileReport(tick=self._tick_count)
        async with LogContext(tick=self._tick_count):
            try:
                await self._reconcile(report)
            except ControllerError as e:
                report.aborted = True
                report.error = str(e)
                logger.warning("reconcile_tick_aborted", **e.to_dict())
            finally:
                report.finished_at = utcnow()
                self.stats.record(report)
                self.last_report = report

            if report.changed or report.failures:
                logger.info(
                    "reconcile_tick_completed",
                    started=len(report.started),
                    upgraded=len(report.upgraded),
                    retired=len(report.retired),
                    updated=len(report.updated),
                    notified=len(report.notified),
                    failures=len(report.failures),
                )
        return report

    async def _reconcile(self, report: ReconcileReport) -> None:
        timeout = self.settings.effective_call_timeout
        consolidate = self.settings.consolidate_jobs_per_source

        snapshot = await self._snapshot(timeout)
        desired = self.assembler.desired(snapshot)
        report.desired = len(desired)

        aborting = await self._repo(self.repository.find_by_status, JobStatus.ABORTING)
        running = await self._repo(self.repository.find_by_status, JobStatus.RUNNING)
        running.sort(key=lambda job: job.created_at)

        for job in aborting:
            await self._finalize_abort(job, report)

        survivors: dict[str, Job] = {}
        blocked: set[str] = set()

        for job in running:
            try:
                key = key_for_job(job, consolidate)
            except InvalidSourceError as e:
                report.fail("identify", job.id, e)
                continue
            if await self._runtime_reports_aborted(job, report):
                await self._mark_lost(job, report)
                continue

            reason = self._abort_reason(job, key, desired, survivors)
            if reason is None:
                survivors[key] = job
                continue
            if not await self._abort(job, reason, report):
                blocked.add(key)

        for key, spec in desired.items():
            if key in survivors or key in blocked:
                continue
            started = await self._start(spec, report)
            if started is not None:
                survivors[key] = started

        for key, job in list(survivors.items()):
            if job.id in report.started:
                continue
            updated = await self._update_in_place(job, desired[key], report)
            if updated is not None:
                survivors[key] = updated

        for key, job in survivors.items():
            await self._sync_specs(job, desired[key], report)

    def _abort_reason(
        self,
        job: Job,
        key: str,
        desired: dict[str, JobSpec],
        survivors: dict[str, Job],
    ) -> str | None:
        if key not in desired:
            return "retire"
        if key in survivors:
            return "duplicate"
        if job.controller_version != self.controller_version:
            return "upgrade"
        if job.id in self.pending_restarts:
            return "restart"
        return None

    # ------------------------------------------------------------------
    # Capability calls
    # ------------------------------------------------------------------

    async def _repo(self, func: Callable[..., Any], *args: Any) -> Any:
        return await run_repository_call(
            func,
            self.settings.effective_call_timeout,
            *args,
            operation=f"repository.{func.__name__}",
        )

    async def _snapshot(self, timeout: float) -> CatalogSnapshot:
        operation = "catalog.snapshot"
        try:
            return await run_with_timeout(self.assembler.snapshot, timeout, operation=operation)
        except ControllerError:
            raise
        except Exception as e:
            raise CatalogError(
                f"{operation} failed: {e}",
                context=ErrorContext(operation=operation),
                cause=e,
            ) from e

    async def _runtime(self, func: Callable[..., Any], job: Job) -> Any:
        operation = f"job_manager.{func.__name__}"
        try:
            return await run_with_timeout(
                func, self.settings.effective_call_timeout, job, operation=operation
            )
        except ControllerError:
            raise
        except Exception as e:
            raise JobManagerError(
                f"{operation} failed: {e}",
                context=ErrorContext(job_id=job.id, operation=operation),
                cause=e,
            ) from e

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _runtime_reports_aborted(self, job: Job, report: ReconcileReport) -> bool:
        try:
            status = await self._runtime(self.job_manager.get_job_status, job)
        except TransientError as e:
            report.fail("status", job.id, e)
            return False
        return status is JobStatus.ABORTED

    async def _retire_record(self, job: Job) -> None:
        job.status = JobStatus.ABORTED
        await self._repo(self.repository.update, job)
        if not self.settings.keep_aborted_jobs:
            await self._repo(self.repository.delete, job.id)

    async def _mark_lost(self, job: Job, report: ReconcileReport) -> None:
        """A RUNNING job the runtime no longer runs; free its slot."""
        lock_key = job_lock_key(job.id)
        if not self.locks.acquire(lock_key, self.settings.lock_ttl_seconds):
            report.skipped.append(job.id)
            return
        try:
            fresh = await self._repo(self.repository.find_by_id, job.id)
            if fresh is None or fresh.status is not JobStatus.RUNNING:
                return
            await self._retire_record(fresh)
            report.lost.append(fresh.id)
            logger.warning("job_lost", job_id=fresh.id)
        finally:
            self.locks.release(lock_key)

    async def _abort(self, job: Job, reason: str, report: ReconcileReport) -> bool:
        """Mark *job* ABORTING and ask the runtime to stop it.

        Returns:
            False if the job is still RUNNING in the repository afterwards
        """
        lock_key = job_lock_key(job.id)
        if not self.locks.acquire(lock_key, self.settings.lock_ttl_seconds):
            report.skipped.append(job.id)
            logger.info("job_busy_skipped", job_id=job.id, reason=reason)
            return False
        try:
            fresh = await self._repo(self.repository.find_by_id, job.id)
            if fresh is None or fresh.status is not JobStatus.RUNNING:
                return True
            fresh.status = JobStatus.ABORTING
            await self._repo(self.repository.update, fresh)
            with self._restart_lock:
                self._restart_requests.discard(fresh.id)

            if reason in ("retire", "duplicate"):
                report.retired.append(fresh.id)
            else:
                report.upgraded.append(fresh.id)
            logger.info(
                "job_aborting",
                job_id=fresh.id,
                reason=reason,
                job_version=fresh.controller_version,
                controller_version=self.controller_version,
            )

            try:
                await self._runtime(self.job_manager.abort_job, fresh)
            except TransientError as e:
                report.fail("abort", fresh.id, e)
                return True
            await self._confirm_aborted(fresh, report)
            return True
        finally:
            self.locks.release(lock_key)

    async def _confirm_aborted(self, job: Job, report: ReconcileReport) -> None:
        """Caller holds the job lease. Finalize if the runtime confirms termination."""
        try:
            status = await self._runtime(self.job_manager.get_job_status, job)
        except TransientError as e:
            report.fail("status", job.id, e)
            return
        if status is JobStatus.ABORTED:
            await self._retire_record(job)
            report.finalized.append(job.id)
            logger.info("job_aborted", job_id=job.id)

    async def _finalize_abort(self, job: Job, report: ReconcileReport) -> None:
        lock_key = job_lock_key(job.id)
        if not self.locks.acquire(lock_key, self.settings.lock_ttl_seconds):
            report.skipped.append(job.id)
            return
        try:
            fresh = await self._repo(self.repository.find_by_id, job.id)
            if fresh is None or fresh.status is not JobStatus.ABORTING:
                return
            try:
                status = await self._runtime(self.job_manager.get_job_status, fresh)
                if status is not JobStatus.ABORTED:
                    await self._runtime(self.job_manager.abort_job, fresh)
                    status = await self._runtime(self.job_manager.get_job_status, fresh)
            except TransientError as e:
                report.fail("finalize", fresh.id, e)
                return
            if status is JobStatus.ABORTED:
                await self._retire_record(fresh)
                report.finalized.append(fresh.id)
                logger.info("job_aborted", job_id=fresh.id)
        finally:
            self.locks.release(lock_key)

    def _new_job(self, spec: JobSpec) -> Job:
        return Job(
            id=new_job_id(spec.key),
            source=spec.source,
            stores=dict(spec.stores),
            labels={VERSION_LABEL: self.version_label},
            status=JobStatus.RUNNING,
            feature_set_delivery_statuses={
                reference: FeatureSetDeliveryStatus(version=0) for reference in spec.feature_sets
            },
        )

    async def _start(self, spec: JobSpec, report: ReconcileReport) -> Job | None:
        job = self._new_job(spec)
        try:
            started = await self._runtime(self.job_manager.start_job, job)
        except TransientError as e:
            report.fail("start", job.id, e)
            return None
        job.external_id = started.external_id

        try:
            await self._repo(self.repository.add, job)
        except RepositoryError:
            try:
                await self._runtime(self.job_manager.abort_job, job)
            except TransientError as e:
                logger.error("orphaned_job_abort_failed", job_id=job.id, error=str(e))
            raise

        report.started.append(job.id)
        logger.info(
            "job_started",
            job_id=job.id,
            source=spec.source.topic,
            stores=sorted(spec.stores),
            feature_sets=sorted(spec.feature_sets),
        )
        return job

    async def _update_in_place(self, job: Job, spec: JobSpec, report: ReconcileReport) -> Job | None:
        stores_changed = job.stores != spec.stores
        served_changed = job.feature_sets != set(spec.feature_sets)
        if not stores_changed and not served_changed:
            return None

        lock_key = job_lock_key(job.id)
        if not self.locks.acquire(lock_key, self.settings.lock_ttl_seconds):
            report.skipped.append(job.id)
            return None
        try:
            fresh = await self._repo(self.repository.find_by_id, job.id)
            if fresh is None or fresh.status is not JobStatus.RUNNING:
                return None

            statuses = {
                reference: entry
                for reference, entry in fresh.feature_set_delivery_statuses.items()
                if reference in spec.feature_sets
            }
            if stores_changed and self.settings.reset_delivery_on_store_change:
                statuses = {}
            for reference in spec.feature_sets:
                statuses.setdefault(reference, FeatureSetDeliveryStatus(version=0))
            fresh.stores = dict(spec.stores)
            fresh.feature_set_delivery_statuses = statuses

            try:
                await self._runtime(self.job_manager.update_job, fresh)
            except TransientError as e:
                report.fail("update", fresh.id, e)
                return None
            await self._repo(self.repository.update, fresh)

            report.updated.append(fresh.id)
            logger.info(
                "job_updated",
                job_id=fresh.id,
                stores=sorted(fresh.stores),
                feature_sets=sorted(fresh.feature_sets),
            )
            return fresh
        finally:
            self.locks.release(lock_key)

    async def _sync_specs(self, job: Job, spec: JobSpec, report: ReconcileReport) -> None:
        for reference, feature_set in sorted(spec.feature_sets.items()):
            entry = job.feature_set_delivery_statuses.get(reference)
            if entry is None:
                continue
            if (
                entry.version == feature_set.version
                and entry.fingerprint == feature_set.fingerprint()
                and not self._ack_overdue(entry)
            ):
                continue
            try:
                advanced = await self.notifier.notify(feature_set, job)
            except RepositoryError:
                raise
            except ControllerError as e:
                report.fail("notify", job.id, e)
                continue
            report.notified.append(f"{job.id}:{reference}@{advanced.version}")

    def _ack_overdue(self, entry: FeatureSetDeliveryStatus) -> bool:
        """True if a published spec has waited longer than the ack timeout."""
        if entry.state is not DeliveryState.IN_PROGRESS or entry.sent_at is None:
            return False
        return utcnow() - entry.sent_at > timedelta(seconds=self.settings.ack_timeout_seconds)
