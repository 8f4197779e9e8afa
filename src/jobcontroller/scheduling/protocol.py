"""Polling loop backend protocol.

A backend owns the timing of reconciliation and nothing else: it calls the
tick coroutine with a fixed delay between the end of one tick and the start
of the next. Two ticks never run at once, and a tick that overruns simply
pushes the next one back. What a tick does is the reconciler's business.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Drives ``Reconciler.tick`` for ``JobControllerService``.

    ``health()`` must report ``healthy`` False once the loop has died, which
    turns the service's ``/health`` endpoint into a 503.
    """

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 1.0) -> None: ...

    def stop(self) -> None:
        """Stop the loop after the tick in progress, if any, completes."""
        ...

    def health(self) -> dict[str, Any]: ...


@dataclass
class BackendHealth:
    """Loop liveness as reported under ``scheduler`` in the health payload."""

    healthy: bool
    backend: str
    interval_seconds: float = 0.0
    tick_count: int = 0
    failed_ticks: int = 0
    last_tick: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_tick"] = self.last_tick.isoformat() if self.last_tick else None
        return data
