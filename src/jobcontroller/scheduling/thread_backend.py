"""Threading-based polling loop backend.

┌──────────────────────────────────────────────────────────────────────┐
│  ThreadSchedulerBackend                                              │
│                                                                      │
│   start()                                                            │
│      │                                                               │
│      ▼                                                               │
│   Daemon Thread                                                      │
│      while not stop_event.wait(interval):                            │
│          tick_count += 1                                             │
│          asyncio.run(tick_callback())   one tick at a time           │
│                                                                      │
│   stop()                                                             │
│      stop_event.set(); thread.join(timeout)                          │
└──────────────────────────────────────────────────────────────────────┘

The wait starts after the previous tick returns, so ticks never overlap and
an overrunning tick simply delays the next one. A tick that raises is
logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime
from typing import Any

from jobcontroller.core.logging import get_logger
from jobcontroller.scheduling.protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Fixed-delay polling loop on a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(reconciler.tick, interval_seconds=1.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, join_timeout: float = 5.0) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._failed_ticks = 0
        self._last_tick: datetime | None = None
        self._interval: float = 1.0
        self._join_timeout = join_timeout
        self._started = False
        self._lock = threading.Lock()

    def start(self, tick_callback: TickCallback, interval_seconds: float = 1.0) -> None:
        if self._started:
            logger.warning("scheduler_backend_already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("scheduler_backend_started", backend=self.name, interval_seconds=interval_seconds)
            while not self._stop_event.wait(interval_seconds):
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = datetime.now(UTC)
                try:
                    asyncio.run(tick_callback())
                except Exception as e:
                    with self._lock:
                        self._failed_ticks += 1
                    logger.exception("scheduler_tick_failed", error=str(e))
            logger.info("scheduler_backend_stopped", backend=self.name)

        self._thread = threading.Thread(target=_loop, daemon=True, name="jobcontroller-reconciler")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self._join_timeout)
            if self._thread.is_alive():
                logger.warning("scheduler_thread_did_not_stop", backend=self.name)

        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            interval_seconds=self._interval,
            tick_count=self._tick_count,
            failed_ticks=self._failed_ticks,
            last_tick=self._last_tick,
        )

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()
