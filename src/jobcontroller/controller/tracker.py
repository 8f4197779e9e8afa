"""Delivery tracker.

Manifesto:
    The channel is at-least-once and unordered across partitions, so the
    tracker's version comparison is the only ordering mechanism. An ack can
    move a feature set to READY only if it is for the version the catalog
    currently holds and every RUNNING job serving the feature set has
    delivered that version. Earlier acks can never regress a later READY
    back to PENDING, and acks from aborted or unknown jobs are never
    attributed.

Ack payload::

    {"feature_set_reference": "default/test", "feature_set_version": 2, "job_id": "kafka-..."}

Outcomes:
    delivered   entry recorded as DELIVERED
    duplicate   entry already DELIVERED at that version
    stale       version below the catalog's (or the job's recorded) version
    anomalous   version above the catalog's; escalated as a warning
    orphaned    job unknown, not RUNNING or not serving the feature set
    unknown     feature set not in the catalog
    malformed   payload could not be parsed
    contended   job lease not obtained in time

Tags:
    jobcontroller, tracker, acknowledgements, versioning, idempotency

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from jobcontroller.catalog import Catalog
from jobcontroller.core.errors import (
    ConcurrentModificationError,
    LockUnavailableError,
    MalformedMessageError,
)
from jobcontroller.core.events import Event
from jobcontroller.core.locks import LockManager, job_lock_key
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import (
    DeliveryState,
    FeatureSetDeliveryStatus,
    FeatureSetRef,
    FeatureSetStatus,
    JobStatus,
)
from jobcontroller.core.settings import ControllerSettings
from jobcontroller.core.timeout import run_repository_call, run_with_timeout
from jobcontroller.repositories import JobRepository

logger = get_logger(__name__)

UPDATE_ATTEMPTS = 3


class AckOutcome(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    STALE = "stale"
    ANOMALOUS = "anomalous"
    ORPHANED = "orphaned"
    UNKNOWN = "unknown"
    MALFORMED = "malformed"
    CONTENDED = "contended"


@dataclass(frozen=True)
class Ack:
    feature_set_reference: str
    feature_set_version: int
    job_id: str

    @classmethod
    def from_payload(cls, payload: Any) -> Ack:
        """Parse an ack payload.

        Raises:
            MalformedMessageError: If a field is missing or has the wrong type
        """
        if not isinstance(payload, dict):
            raise MalformedMessageError(f"Ack payload must be an object, got {type(payload).__name__}")
        reference = payload.get("feature_set_reference")
        version = payload.get("feature_set_version")
        job_id = payload.get("job_id")
        if not isinstance(reference, str) or not isinstance(job_id, str) or not job_id:
            raise MalformedMessageError(f"Ack is missing reference or job id: {payload!r}")
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise MalformedMessageError(f"Ack version must be a non-negative integer: {payload!r}")
        try:
            FeatureSetRef.parse(reference)
        except ValueError as e:
            raise MalformedMessageError(str(e), cause=e) from e
        return cls(reference, version, job_id)


@dataclass
class TrackerStats:
    received: int = 0
    ready_transitions: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in AckOutcome})

    def record(self, outcome: AckOutcome) -> None:
        self.outcomes[outcome.value] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "ready_transitions": self.ready_transitions,
            **self.outcomes,
        }


class DeliveryTracker:
    """Applies acks to job delivery entries and feature set readiness."""

    def __init__(
        self,
        catalog: Catalog,
        repository: JobRepository,
        locks: LockManager,
        settings: ControllerSettings,
    ) -> None:
        self.catalog = catalog
        self.repository = repository
        self.locks = locks
        self.settings = settings
        self.stats = TrackerStats()

    async def handle_event(self, event: Event) -> None:
        """Event bus handler for ``featureset.ack`` events.

        Raises:
            LockUnavailableError: If the job lease stayed busy, so that a
                transport with redelivery hands the ack over again
        """
        outcome = await self.handle_ack(event.payload)
        if outcome is AckOutcome.CONTENDED:
            raise LockUnavailableError("Job lease busy, ack not recorded").with_context(
                event_id=event.event_id, key=event.key
            )

    async def handle_ack(self, payload: Any) -> AckOutcome:
        self.stats.received += 1
        try:
            ack = Ack.from_payload(payload)
        except MalformedMessageError as e:
            logger.warning("ack_malformed", error=e.message)
            return self._done(AckOutcome.MALFORMED)

        log = logger.bind(
            feature_set=ack.feature_set_reference,
            version=ack.feature_set_version,
            job_id=ack.job_id,
        )
        timeout = self.settings.effective_call_timeout

        feature_set = await run_with_timeout(
            self.catalog.get_feature_set,
            timeout,
            ack.feature_set_reference,
            operation="catalog.get_feature_set",
        )
        if feature_set is None:
            log.info("ack_unknown_feature_set")
            return self._done(AckOutcome.UNKNOWN)
        if ack.feature_set_version < feature_set.version:
            log.debug("ack_stale", current_version=feature_set.version)
            return self._done(AckOutcome.STALE)
        if ack.feature_set_version > feature_set.version:
            log.warning("ack_anomalous", current_version=feature_set.version)
            return self._done(AckOutcome.ANOMALOUS)

        try:
            outcome = await self._record_delivery(ack)
        except LockUnavailableError:
            log.warning("ack_lock_unavailable")
            return self._done(AckOutcome.CONTENDED)

        if outcome is AckOutcome.DELIVERED or (
            outcome is AckOutcome.DUPLICATE and feature_set.status is not FeatureSetStatus.READY
        ):
            await self._mark_ready_if_delivered(ack)
        log.debug("ack_processed", outcome=outcome.value)
        return self._done(outcome)

    def _done(self, outcome: AckOutcome) -> AckOutcome:
        self.stats.record(outcome)
        return outcome

    async def _record_delivery(self, ack: Ack) -> AckOutcome:
        timeout = self.settings.effective_call_timeout
        async with self.locks.hold(
            job_lock_key(ack.job_id),
            wait_seconds=self.settings.ack_lock_wait_seconds,
            ttl_seconds=self.settings.lock_ttl_seconds,
        ):
            for attempt in range(1, UPDATE_ATTEMPTS + 1):
                job = await run_repository_call(
                    self.repository.find_by_id, timeout, ack.job_id, operation="repository.find_by_id"
                )
                if job is None or job.status is not JobStatus.RUNNING:
                    return AckOutcome.ORPHANED

                entry = job.feature_set_delivery_statuses.get(ack.feature_set_reference)
                if entry is None:
                    return AckOutcome.ORPHANED
                if entry.version > ack.feature_set_version:
                    return AckOutcome.STALE
                if entry.version == ack.feature_set_version and entry.state is DeliveryState.DELIVERED:
                    return AckOutcome.DUPLICATE

                if entry.version == ack.feature_set_version:
                    entry.state = DeliveryState.DELIVERED
                else:
                    job.feature_set_delivery_statuses[ack.feature_set_reference] = (
                        FeatureSetDeliveryStatus(
                            version=ack.feature_set_version,
                            state=DeliveryState.DELIVERED,
                        )
                    )

                try:
                    await run_repository_call(
                        self.repository.update, timeout, job, operation="repository.update"
                    )
                    return AckOutcome.DELIVERED
                except ConcurrentModificationError:
                    if attempt == UPDATE_ATTEMPTS:
                        raise
                    logger.debug("ack_update_retry", job_id=ack.job_id)
        return AckOutcome.CONTENDED  # unreachable: the last attempt returns or raises

    async def _mark_ready_if_delivered(self, ack: Ack) -> None:
        """Set READY (CAS on the version) once every serving RUNNING job delivered it."""
        timeout = self.settings.effective_call_timeout
        running = await run_repository_call(
            self.repository.find_by_status,
            timeout,
            JobStatus.RUNNING,
            operation="repository.find_by_status",
        )
        serving = [job for job in running if ack.feature_set_reference in job.feature_sets]
        if not serving:
            return
        for job in serving:
            entry = job.feature_set_delivery_statuses[ack.feature_set_reference]
            if entry.version != ack.feature_set_version or entry.state is not DeliveryState.DELIVERED:
                return

        updated = await run_with_timeout(
            self.catalog.update_feature_set_status,
            timeout,
            ack.feature_set_reference,
            FeatureSetStatus.READY,
            ack.feature_set_version,
            operation="catalog.update_feature_set_status",
        )
        if updated:
            self.stats.ready_transitions += 1
            logger.info(
                "feature_set_ready",
                feature_set=ack.feature_set_reference,
                version=ack.feature_set_version,
            )
