"""Per-key lease manager.

Manifesto:
    The reconciler and the delivery tracker both read-then-write the same
    job and feature set records. Every such read-modify-write holds a lease
    on the record's key, so an ack can never be attributed to a job that a
    concurrent upgrade is retiring, and two upgrade decisions on one job
    never interleave. Leases carry a TTL so a wedged holder cannot block a
    key forever.

Leases are process-local (both activities live in one controller process)
and safe to use from any thread or event loop: the internal mutex is only
held for the dictionary update, never while waiting.

Tags:
    jobcontroller, locks, leases, TTL, concurrency, safety

Doc-Types:
    api-reference


    Lease Flow::

        Reconciler: acquire("job:kafka-1a2b") -> True -> upgrade -> release
        Tracker:    hold("job:kafka-1a2b", wait=5s)  polls until released
        Expired leases (now > expires_at) are taken over by the next caller.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

from jobcontroller.core.errors import LockUnavailableError
from jobcontroller.core.logging import get_logger

logger = get_logger(__name__)


def job_lock_key(job_id: str) -> str:
    return f"job:{job_id}"


def feature_set_lock_key(reference: str) -> str:
    return f"featureset:{reference}"


@dataclass
class Lease:
    """An active lease on a key."""

    key: str
    owner: str
    acquired_at: float
    expires_at: float


class LockManager:
    """TTL lease manager keyed by string.

    Example:
        >>> locks = LockManager()
        >>> if locks.acquire("job:kafka-1a2b"):
        ...     try:
        ...         pass  # mutate the job
        ...     finally:
        ...         locks.release("job:kafka-1a2b")
    """

    def __init__(self, default_ttl_seconds: float = 60.0, instance_id: str | None = None) -> None:
        self.default_ttl = default_ttl_seconds
        self.instance_id = instance_id or str(uuid4())
        self._leases: dict[str, Lease] = {}
        self._mutex = threading.Lock()

    def acquire(self, key: str, ttl_seconds: float | None = None, owner: str | None = None) -> bool:
        """Take the lease on *key* if it is free or expired.

        Returns:
            True if the lease was acquired, False if held by someone else
        """
        now = time.monotonic()
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        with self._mutex:
            current = self._leases.get(key)
            if current is not None and current.expires_at > now:
                return False
            if current is not None:
                logger.warning("lease_expired_takeover", key=key, previous_owner=current.owner)
            self._leases[key] = Lease(
                key=key,
                owner=owner or self.instance_id,
                acquired_at=now,
                expires_at=now + ttl,
            )
            return True

    def release(self, key: str) -> bool:
        """Release the lease on *key*. Returns False if no lease was held."""
        with self._mutex:
            return self._leases.pop(key, None) is not None

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            lease = self._leases.get(key)
            return lease is not None and lease.expires_at > time.monotonic()

    def list_active_leases(self) -> list[Lease]:
        now = time.monotonic()
        with self._mutex:
            return [lease for lease in self._leases.values() if lease.expires_at > now]

    def cleanup_expired(self) -> int:
        """Drop expired leases. Returns the number removed."""
        now = time.monotonic()
        with self._mutex:
            expired = [key for key, lease in self._leases.items() if lease.expires_at <= now]
            for key in expired:
                del self._leases[key]
        return len(expired)

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        wait_seconds: float = 0.0,
        ttl_seconds: float | None = None,
        poll_interval: float = 0.01,
    ) -> AsyncIterator[Lease]:
        """Hold the lease on *key* for the duration of the block.

        Waits up to *wait_seconds* (yielding to the event loop between
        attempts) for a lease held elsewhere.

        Raises:
            LockUnavailableError: If the lease could not be obtained in time
        """
        deadline = time.monotonic() + wait_seconds
        while not self.acquire(key, ttl_seconds):
            if time.monotonic() >= deadline:
                raise LockUnavailableError(f"Lease on {key} unavailable").with_context(lock_key=key)
            await asyncio.sleep(poll_interval)
        try:
            with self._mutex:
                lease = self._leases[key]
            yield lease
        finally:
            self.release(key)
