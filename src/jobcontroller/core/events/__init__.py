"""Notification channel between the controller and running jobs.

Why This Package Exists
-----------------------
Feature set specs flow out to running jobs and acknowledgements flow back.
The controller never talks to a job directly: it publishes to and consumes
from a message bus that is at-least-once and unordered across partitions.

The ``EventBus`` protocol with pluggable backends (in-memory, Kafka)
decouples the notifier and the tracker from the transport. In-memory works
for single-process deployments and tests; Kafka is the production channel.

Usage::

    from jobcontroller.core.events import Event, SPEC_EVENT

    await bus.publish(Event(event_type=SPEC_EVENT, source="notifier",
                            key="default/test", payload=spec))

    async def handler(event: Event):
        ...
    sub_id = await bus.subscribe(ACK_EVENT, handler)

Modules
-------
memory      InMemoryEventBus -- asyncio, single-node
kafka       KafkaEventBus -- confluent-kafka producer/consumer
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "ACK_EVENT",
    "SPEC_EVENT",
    "Event",
    "EventBus",
    "EventHandler",
]

# Outbound feature set specs (controller -> jobs)
SPEC_EVENT = "featureset.spec"
# Inbound acknowledgements (jobs -> controller)
ACK_EVENT = "featureset.ack"


@dataclass
class Event:
    """Message on the notification channel.

    Attributes:
        event_type: Dot-separated type (``featureset.spec``, ``featureset.ack``)
        source: Origin component
        payload: Event-specific data
        key: Partition key; messages with one key keep their relative order
        timestamp: When the event was created (UTC)
        event_id: Unique event identifier
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    key: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if event type matches a pattern (``*``, ``featureset.*`` or exact)."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return self.event_type.startswith(pattern[:-2] + ".")
        return self.event_type == pattern

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "source": self.source,
            "payload": self.payload,
            "key": self.key,
            "timestamp": self.timestamp.isoformat(),
            "event_id": self.event_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        return cls(
            event_type=data["event_type"],
            source=data.get("source", "unknown"),
            payload=data.get("payload", {}),
            key=data.get("key"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.now(UTC),
            event_id=data.get("event_id") or str(uuid.uuid4()),
        )


EventHandler = Callable[[Event], Awaitable[None]]


@runtime_checkable
class EventBus(Protocol):
    """Protocol for notification channel implementations."""

    async def publish(self, event: Event) -> None:
        """Publish an event.

        Raises:
            ChannelError: If the transport rejected the message
        """
        ...

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern. Returns a subscription id."""
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...

    async def close(self) -> None:
        """Clean up resources (connections, consumer threads)."""
        ...
