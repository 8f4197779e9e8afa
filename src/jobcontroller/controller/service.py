"""Job controller service: wiring, loop lifecycle and operator commands.

┌──────────────────────────────────────────────────────────────────────┐
│  JobControllerService                                                │
│                                                                      │
│   ThreadSchedulerBackend ──tick()──► Reconciler ──► SpecNotifier ─┐  │
│                                          │                        │  │
│                                          ▼                        ▼  │
│                     JobManager   JobRepository   Catalog      EventBus│
│                                          ▲                        │  │
│                                          │                        │  │
│                           DeliveryTracker ◄──── featureset.ack ───┘  │
└──────────────────────────────────────────────────────────────────────┘

Capabilities not passed in are built from settings: in-memory catalog and
runtime, a memory or SQLite repository and a memory or Kafka event bus.
"""

from __future__ import annotations

from typing import Any

from jobcontroller.catalog import Catalog
from jobcontroller.catalog.memory import InMemoryCatalog
from jobcontroller.controller.desired import DesiredStateAssembler
from jobcontroller.controller.notifier import SpecNotifier
from jobcontroller.controller.reconciler import ReconcileReport, Reconciler
from jobcontroller.controller.tracker import DeliveryTracker
from jobcontroller.core.errors import JobNotFoundError
from jobcontroller.core.events import ACK_EVENT, SPEC_EVENT, EventBus
from jobcontroller.core.events.memory import InMemoryEventBus
from jobcontroller.core.locks import LockManager
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import Job, JobStatus
from jobcontroller.core.settings import ControllerSettings, EventBackend, RepositoryBackend
from jobcontroller.repositories import JobRepository
from jobcontroller.repositories.memory import InMemoryJobRepository
from jobcontroller.repositories.sqlite import SqliteJobRepository
from jobcontroller.runtime import JobManager
from jobcontroller.runtime.memory import InMemoryJobManager
from jobcontroller.scheduling import SchedulerBackend, ThreadSchedulerBackend

logger = get_logger(__name__)


def build_event_bus(settings: ControllerSettings) -> EventBus:
    if settings.event_backend is EventBackend.KAFKA:
        from jobcontroller.core.events.kafka import KafkaEventBus

        bus = KafkaEventBus(
            settings.kafka_bootstrap_servers,
            topics={SPEC_EVENT: settings.specs_topic, ACK_EVENT: settings.acks_topic},
            group_id=settings.consumer_group,
        )
        bus.connect()
        return bus
    return InMemoryEventBus()


def build_repository(settings: ControllerSettings) -> JobRepository:
    if settings.repository_backend is RepositoryBackend.SQLITE:
        return SqliteJobRepository.from_path(settings.database_path)
    return InMemoryJobRepository()


class JobControllerService:
    """Owns the controller's components and the reconciliation loop.

    Example:
        >>> service = JobControllerService(settings)
        >>> await service.start()
        >>> service.list_jobs(JobStatus.RUNNING)
        >>> await service.stop()
    """

    def __init__(
        self,
        settings: ControllerSettings,
        *,
        catalog: Catalog | None = None,
        job_manager: JobManager | None = None,
        repository: JobRepository | None = None,
        bus: EventBus | None = None,
        locks: LockManager | None = None,
        backend: SchedulerBackend | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog if catalog is not None else InMemoryCatalog()
        self.job_manager = job_manager if job_manager is not None else InMemoryJobManager()
        self.repository = repository if repository is not None else build_repository(settings)
        self.bus = bus if bus is not None else build_event_bus(settings)
        self.locks = locks if locks is not None else LockManager(settings.lock_ttl_seconds)
        self.backend = backend if backend is not None else ThreadSchedulerBackend()

        self.assembler = DesiredStateAssembler(self.catalog, settings)
        self.notifier = SpecNotifier(self.catalog, self.repository, self.bus, self.locks, settings)
        self.tracker = DeliveryTracker(self.catalog, self.repository, self.locks, settings)
        self.reconciler = Reconciler(
            self.assembler,
            self.job_manager,
            self.repository,
            self.notifier,
            self.locks,
            settings,
        )
        self._ack_subscription: str | None = None
        self._started = False

    async def start(self) -> None:
        """Subscribe the tracker to acks and start the polling loop."""
        if self._started:
            return
        self._ack_subscription = await self.bus.subscribe(ACK_EVENT, self.tracker.handle_event)
        self.backend.start(self._tick, interval_seconds=self.settings.polling_interval_seconds)
        self._started = True
        logger.info(
            "jobcontroller_started",
            controller_version=self.settings.controller_version,
            polling_interval_ms=self.settings.polling_interval_ms,
            consolidate=self.settings.consolidate_jobs_per_source,
        )

    async def _tick(self) -> None:
        await self.reconciler.tick()

    async def reconcile_once(self) -> ReconcileReport:
        """Run one tick on the caller's event loop."""
        return await self.reconciler.tick()

    async def stop(self) -> None:
        if not self._started:
            return
        self.backend.stop()
        if self._ack_subscription is not None:
            await self.bus.unsubscribe(self._ack_subscription)
            self._ack_subscription = None
        await self.bus.close()
        self._started = False
        logger.info("jobcontroller_stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        jobs = self.repository.find_by_status(status) if status else self.repository.find_all()
        return sorted(jobs, key=lambda job: job.created_at)

    def get_job(self, job_id: str) -> Job:
        job = self.repository.find_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def restart_job(self, job_id: str) -> Job:
        return self.reconciler.request_restart(job_id)

    def health(self) -> dict[str, Any]:
        scheduler = self.backend.health()
        last_report = self.reconciler.last_report
        degraded = last_report is not None and (last_report.aborted or bool(last_report.failures))
        if not self._started or not scheduler.get("healthy", False):
            status = "unhealthy"
        elif degraded:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "controller_version": self.settings.controller_version,
            "scheduler": scheduler,
            "reconciler": self.reconciler.stats.to_dict(),
            "notifier": self.notifier.stats.to_dict(),
            "tracker": self.tracker.stats.to_dict(),
            "last_report": last_report.to_dict() if last_report else None,
        }
