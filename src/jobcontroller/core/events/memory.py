"""
In-memory notification channel.

Manifesto:
    Single-process deployments and test suites need a channel that delivers
    specs and acks immediately without a broker.

Handlers run on the publisher's event loop, so an ack published by a
handler of a spec event is processed before the spec ``publish`` returns.
The subscription table is guarded by a thread lock because the reconciler
publishes from the scheduler thread while subscribers may register from
the main loop.

Tags:
    jobcontroller, events, in-memory, asyncio, testing, single-node

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections import deque
from dataclasses import dataclass

from jobcontroller.core.errors import ChannelError
from jobcontroller.core.events import Event, EventHandler
from jobcontroller.core.logging import get_logger

__all__ = ["InMemoryEventBus"]

logger = get_logger(__name__)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


class InMemoryEventBus:
    """In-process channel for single-node deployments.

    ``history`` keeps the most recent published events (oldest first) so
    operators and tests can inspect what was sent.

    Example::

        bus = InMemoryEventBus()

        async def on_spec(event: Event):
            print(event.key, event.payload["version"])

        await bus.subscribe(SPEC_EVENT, on_spec)
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._mutex = threading.Lock()
        self._closed = False
        self.history: deque[Event] = deque(maxlen=history_size)

    async def publish(self, event: Event) -> None:
        """Deliver an event to all matching subscribers.

        Handlers are called concurrently; a failing handler is logged and
        does not affect delivery to the others.

        Raises:
            ChannelError: If the bus has been closed
        """
        if self._closed:
            raise ChannelError("Event bus is closed").with_context(event_type=event.event_type)

        with self._mutex:
            self.history.append(event)
            handlers = [
                (sub.id, sub.handler)
                for sub in self._subscriptions.values()
                if event.matches(sub.pattern)
            ]

        if not handlers:
            return

        async def safe_call(sub_id: str, handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    error=str(e),
                )

        await asyncio.gather(*[safe_call(sub_id, handler) for sub_id, handler in handlers])

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._mutex:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=event_type, handler=handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        with self._mutex:
            self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        self._closed = True
        with self._mutex:
            self._subscriptions.clear()

    def published(self, event_type: str | None = None, key: str | None = None) -> list[Event]:
        """Events in ``history`` filtered by type pattern and key."""
        with self._mutex:
            events = list(self.history)
        return [
            e
            for e in events
            if (event_type is None or e.matches(event_type)) and (key is None or e.key == key)
        ]

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
