"""Spec notifier.

Manifesto:
    Every publication of a feature set spec carries a version that was
    never sent before. The version is advanced in the catalog with a
    compare-and-swap *before* publishing, so a retry after a transport
    failure always goes out under a fresh version and a version number can
    never be reused.

Sequence for one notification::

    featureset lease ─┬─ catalog.advance_feature_set_version(v -> v+1, PENDING)
                      ├─ job entry := {v+1, IN_PROGRESS, fingerprint=None}
                      ├─ publish spec v+1 keyed "project/name"
                      └─ job entry.fingerprint := content fingerprint

The entry is written before publishing so an ack racing the publish finds
it. The fingerprint is written only after a successful publish: an entry
without one means "not known to be delivered", and the reconciler's spec
sync notifies again under the next version.

Tags:
    jobcontroller, notifier, versioning, compare-and-swap, kafka

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jobcontroller.catalog import Catalog
from jobcontroller.core.errors import ConcurrentModificationError, JobNotFoundError
from jobcontroller.core.events import SPEC_EVENT, Event, EventBus
from jobcontroller.core.locks import LockManager, feature_set_lock_key, job_lock_key
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import (
    DeliveryState,
    FeatureSet,
    FeatureSetDeliveryStatus,
    Job,
    utcnow,
)
from jobcontroller.core.settings import ControllerSettings
from jobcontroller.core.timeout import run_repository_call, run_with_timeout
from jobcontroller.repositories import JobRepository

logger = get_logger(__name__)

UPDATE_ATTEMPTS = 3


@dataclass
class NotifierStats:
    published: int = 0
    publish_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"published": self.published, "publish_failures": self.publish_failures}


class SpecNotifier:
    """Publishes feature set specs to the job serving them."""

    def __init__(
        self,
        catalog: Catalog,
        repository: JobRepository,
        bus: EventBus,
        locks: LockManager,
        settings: ControllerSettings,
    ) -> None:
        self.catalog = catalog
        self.repository = repository
        self.bus = bus
        self.locks = locks
        self.settings = settings
        self.stats = NotifierStats()

    async def notify(self, feature_set: FeatureSet, job: Job) -> FeatureSet:
        """Publish the next version of *feature_set* for *job*.

        *feature_set* is the caller's view of the catalog; if the catalog has
        moved past its version the notification is refused.

        Returns:
            The feature set at its new version

        Raises:
            ConcurrentModificationError: If the catalog version moved on
            ChannelError: If the spec could not be published
            RepositoryError: If the job record could not be written
        """
        reference = feature_set.reference
        timeout = self.settings.effective_call_timeout

        async with self.locks.hold(
            feature_set_lock_key(reference),
            wait_seconds=self.settings.ack_lock_wait_seconds,
            ttl_seconds=self.settings.lock_ttl_seconds,
        ):
            advanced = await run_with_timeout(
                self.catalog.advance_feature_set_version,
                timeout,
                feature_set.ref,
                feature_set.version,
                operation="catalog.advance_feature_set_version",
            )
            await self._record(job.id, reference, advanced.version, fingerprint=None)

            event = Event(
                event_type=SPEC_EVENT,
                source="jobcontroller.notifier",
                key=reference,
                payload=advanced.to_spec(),
            )
            try:
                await self.bus.publish(event)
            except Exception:
                self.stats.publish_failures += 1
                logger.warning(
                    "spec_publish_failed",
                    job_id=job.id,
                    feature_set=reference,
                    version=advanced.version,
                )
                raise

            self.stats.published += 1
            await self._record(job.id, reference, advanced.version, fingerprint=advanced.fingerprint())

        logger.info("spec_published", job_id=job.id, feature_set=reference, version=advanced.version)
        return advanced

    async def _record(self, job_id: str, reference: str, version: int, fingerprint: str | None) -> None:
        """Write the delivery entry for *reference* on the job under its lease.

        Never moves an entry backwards; a DELIVERED entry at *version* keeps
        its state and only gains the fingerprint.
        """
        timeout = self.settings.effective_call_timeout
        async with self.locks.hold(
            job_lock_key(job_id),
            wait_seconds=self.settings.ack_lock_wait_seconds,
            ttl_seconds=self.settings.lock_ttl_seconds,
        ):
            for attempt in range(1, UPDATE_ATTEMPTS + 1):
                job = await run_repository_call(
                    self.repository.find_by_id, timeout, job_id, operation="repository.find_by_id"
                )
                if job is None:
                    raise JobNotFoundError(job_id)

                entry = job.feature_set_delivery_statuses.get(reference)
                if entry is not None and entry.version > version:
                    return
                if entry is None or entry.version < version:
                    job.feature_set_delivery_statuses[reference] = FeatureSetDeliveryStatus(
                        version=version,
                        state=DeliveryState.IN_PROGRESS,
                        fingerprint=fingerprint,
                        sent_at=utcnow(),
                    )
                else:
                    entry.fingerprint = fingerprint
                    entry.sent_at = utcnow()

                try:
                    await run_repository_call(
                        self.repository.update, timeout, job, operation="repository.update"
                    )
                    return
                except ConcurrentModificationError:
                    if attempt == UPDATE_ATTEMPTS:
                        raise
                    logger.debug("delivery_entry_retry", job_id=job_id, feature_set=reference)
