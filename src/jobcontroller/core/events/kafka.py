"""
Kafka notification channel.

Manifesto:
    Running ingestion jobs live in other processes (often other clusters).
    Specs go out on one topic and acks come back on another; the message
    key is the feature set reference so all specs for one feature set land
    on one partition and keep their relative order.

Each event type maps to a topic. Outbound messages carry the event payload
as JSON; inbound messages are turned back into events by topic. The
consumer runs on its own daemon thread with a private event loop and
dispatches to async handlers, so a slow tick on the scheduler thread never
delays ack processing. Offsets are committed by hand once every handler has
returned; a handler failure rewinds to the message so it is delivered again.

Tags:
    jobcontroller, events, kafka, confluent-kafka, multi-node

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import json
import threading
import uuid
from dataclasses import dataclass
from typing import Any

from confluent_kafka import Consumer, KafkaError, Producer, TopicPartition

from jobcontroller.core.errors import ChannelError
from jobcontroller.core.events import ACK_EVENT, SPEC_EVENT, Event, EventHandler
from jobcontroller.core.logging import get_logger

__all__ = ["KafkaEventBus"]

logger = get_logger(__name__)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


class KafkaEventBus:
    """Kafka backend for the spec/ack channel.

    Example::

        bus = KafkaEventBus("kafka:9092", topics={SPEC_EVENT: "feature-set-specs",
                                                  ACK_EVENT: "feature-set-specs-ack"})
        bus.connect()
        await bus.subscribe(ACK_EVENT, tracker.handle_event)
    """

    def __init__(
        self,
        bootstrap_servers: str,
        *,
        topics: dict[str, str] | None = None,
        group_id: str = "jobcontroller",
        flush_timeout: float = 10.0,
        poll_timeout: float = 1.0,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.topics = topics or {
            SPEC_EVENT: "feature-set-specs",
            ACK_EVENT: "feature-set-specs-ack",
        }
        self.group_id = group_id
        self.flush_timeout = flush_timeout
        self.poll_timeout = poll_timeout

        self._event_types = {topic: event_type for event_type, topic in self.topics.items()}
        self._subscriptions: dict[str, Subscription] = {}
        self._mutex = threading.Lock()
        self._producer: Producer | None = None
        self._consumer_thread: threading.Thread | None = None
        self._resubscribe = threading.Event()
        self._stop = threading.Event()
        self._closed = False

    def connect(self) -> None:
        """Create the producer. The consumer starts with the first subscription."""
        if self._producer is None:
            self._producer = Producer({"bootstrap.servers": self.bootstrap_servers, "acks": "all"})
            logger.info("kafka_producer_created", bootstrap_servers=self.bootstrap_servers)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _produce(self, topic: str, event: Event) -> None:
        if self._producer is None:
            self.connect()
        errors: list[Any] = []

        def on_delivery(err: Any, _msg: Any) -> None:
            if err is not None:
                errors.append(err)

        self._producer.produce(
            topic,
            key=event.key.encode("utf-8") if event.key else None,
            value=json.dumps(event.payload).encode("utf-8"),
            headers={"event_id": event.event_id, "source": event.source},
            on_delivery=on_delivery,
        )
        remaining = self._producer.flush(self.flush_timeout)
        if remaining:
            raise ChannelError(f"{remaining} message(s) not delivered to {topic}")
        if errors:
            raise ChannelError(f"Delivery to {topic} failed: {errors[0]}")

    async def publish(self, event: Event) -> None:
        """Produce an event to its topic and wait for the broker's ack.

        Raises:
            ChannelError: If the event type has no topic or delivery failed
        """
        if self._closed:
            raise ChannelError("Event bus is closed")
        topic = self.topics.get(event.event_type)
        if topic is None:
            raise ChannelError(f"No topic configured for {event.event_type}").with_context(
                event_type=event.event_type
            )
        try:
            await asyncio.to_thread(self._produce, topic, event)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(f"Produce to {topic} failed: {e}", cause=e).with_context(
                event_type=event.event_type, key=event.key
            ) from e
        logger.debug("event_published", topic=topic, key=event.key, event_type=event.event_type)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _subscribed_topics(self) -> list[str]:
        with self._mutex:
            patterns = [sub.pattern for sub in self._subscriptions.values()]
        return sorted(
            topic
            for event_type, topic in self.topics.items()
            if any(Event(event_type=event_type, source="").matches(p) for p in patterns)
        )

    def _to_event(self, msg: Any) -> Event:
        headers = dict(msg.headers() or [])
        key = msg.key()
        return Event(
            event_type=self._event_types[msg.topic()],
            source=(headers.get("source") or b"kafka").decode("utf-8"),
            payload=json.loads(msg.value().decode("utf-8")),
            key=key.decode("utf-8") if key else None,
            event_id=(headers.get("event_id") or uuid.uuid4().hex.encode()).decode("utf-8"),
        )

    async def _dispatch(self, event: Event) -> bool:
        """Run every matching handler; False if any of them raised."""
        with self._mutex:
            handlers = [
                (sub.id, sub.handler)
                for sub in self._subscriptions.values()
                if event.matches(sub.pattern)
            ]

        async def safe_call(sub_id: str, handler: EventHandler) -> bool:
            try:
                await handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    error=str(e),
                )
                return False
            return True

        results = await asyncio.gather(*[safe_call(sub_id, handler) for sub_id, handler in handlers])
        return all(results)

    def _handle_message(self, consumer: Any, loop: asyncio.AbstractEventLoop, msg: Any) -> None:
        """Dispatch one message and commit its offset only once it was handled.

        A failed handler rewinds the partition to the message, so the ack is
        redelivered on a later poll instead of being dropped.
        """
        try:
            event = self._to_event(msg)
        except (KeyError, ValueError, UnicodeDecodeError) as e:
            logger.warning("event_parse_error", topic=msg.topic(), error=str(e))
            consumer.commit(message=msg, asynchronous=False)
            return
        if loop.run_until_complete(self._dispatch(event)):
            consumer.commit(message=msg, asynchronous=False)
            return
        logger.warning(
            "event_redelivery_scheduled",
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
        )
        consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
        self._stop.wait(self.poll_timeout)

    def _consume_loop(self) -> None:
        consumer = Consumer(
            {
                "bootstrap.servers": self.bootstrap_servers,
                "group.id": self.group_id,
                "auto.offset.reset": "latest",
                "enable.auto.commit": False,
            }
        )
        loop = asyncio.new_event_loop()
        try:
            while not self._stop.is_set():
                if self._resubscribe.is_set():
                    self._resubscribe.clear()
                    topics = self._subscribed_topics()
                    if topics:
                        consumer.subscribe(topics)
                        logger.info("kafka_consumer_subscribed", topics=topics)

                msg = consumer.poll(timeout=self.poll_timeout)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        continue
                    logger.error("kafka_consumer_error", error=str(msg.error()))
                    continue
                self._handle_message(consumer, loop, msg)
        finally:
            consumer.close()
            loop.close()

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._mutex:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=event_type, handler=handler)
        self._resubscribe.set()
        if self._consumer_thread is None:
            self._consumer_thread = threading.Thread(
                target=self._consume_loop, name="jobcontroller-kafka-consumer", daemon=True
            )
            self._consumer_thread.start()
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        with self._mutex:
            self._subscriptions.pop(subscription_id, None)
        self._resubscribe.set()

    async def close(self) -> None:
        self._closed = True
        self._stop.set()
        if self._consumer_thread is not None:
            await asyncio.to_thread(self._consumer_thread.join, self.poll_timeout * 5)
            self._consumer_thread = None
        if self._producer is not None:
            await asyncio.to_thread(self._producer.flush, self.flush_timeout)
            self._producer = None
        with self._mutex:
            self._subscriptions.clear()
