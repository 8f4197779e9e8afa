"""Tests for jobcontroller.core.events.kafka -- KafkaEventBus (mocked confluent-kafka).

Verifies topic mapping, message encoding and delivery error handling
without a broker by patching the producer class.
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from jobcontroller.core.errors import ChannelError, LockUnavailableError
from jobcontroller.core.events import ACK_EVENT, SPEC_EVENT, Event
from jobcontroller.core.events.kafka import KafkaEventBus


def _message(topic: str, payload: dict, key: bytes | None = b"default/test", headers=None):
    return SimpleNamespace(
        topic=lambda: topic,
        key=lambda: key,
        value=lambda: json.dumps(payload).encode("utf-8"),
        headers=lambda: headers,
        partition=lambda: 0,
        offset=lambda: 5,
    )


@pytest.fixture()
def producer():
    instance = MagicMock()
    instance.flush.return_value = 0
    with patch("jobcontroller.core.events.kafka.Producer", return_value=instance) as cls:
        instance.cls = cls
        yield instance


class TestKafkaEventBusInit:
    def test_default_topics(self):
        bus = KafkaEventBus("kafka:9092")
        assert bus.topics == {SPEC_EVENT: "feature-set-specs", ACK_EVENT: "feature-set-specs-ack"}
        assert bus._producer is None

    def test_connect_creates_producer_with_acks_all(self, producer):
        bus = KafkaEventBus("kafka:9092")
        bus.connect()
        producer.cls.assert_called_once_with({"bootstrap.servers": "kafka:9092", "acks": "all"})


class TestKafkaEventBusPublish:
    @pytest.mark.asyncio
    async def test_publish_keyed_json(self, producer):
        bus = KafkaEventBus("kafka:9092", topics={SPEC_EVENT: "specs", ACK_EVENT: "acks"})
        event = Event(SPEC_EVENT, "notifier", payload={"version": 2}, key="default/test")

        await bus.publish(event)

        args, kwargs = producer.produce.call_args
        assert args == ("specs",)
        assert kwargs["key"] == b"default/test"
        assert json.loads(kwargs["value"]) == {"version": 2}
        assert kwargs["headers"]["event_id"] == event.event_id
        producer.flush.assert_called_once()

    @pytest.mark.asyncio
    async def test_unmapped_event_type(self, producer):
        bus = KafkaEventBus("kafka:9092")
        with pytest.raises(ChannelError, match="No topic"):
            await bus.publish(Event("other.event", "test"))

    @pytest.mark.asyncio
    async def test_delivery_error_raises(self, producer):
        def produce(topic, key, value, headers, on_delivery):
            on_delivery("broker down", None)

        producer.produce.side_effect = produce
        bus = KafkaEventBus("kafka:9092")
        with pytest.raises(ChannelError, match="broker down"):
            await bus.publish(Event(SPEC_EVENT, "notifier", key="default/test"))

    @pytest.mark.asyncio
    async def test_undelivered_messages_raise(self, producer):
        producer.flush.return_value = 1
        bus = KafkaEventBus("kafka:9092")
        with pytest.raises(ChannelError, match="not delivered"):
            await bus.publish(Event(SPEC_EVENT, "notifier", key="default/test"))

    @pytest.mark.asyncio
    async def test_producer_exception_wrapped(self, producer):
        producer.produce.side_effect = BufferError("queue full")
        bus = KafkaEventBus("kafka:9092")
        with pytest.raises(ChannelError) as exc_info:
            await bus.publish(Event(SPEC_EVENT, "notifier", key="default/test"))
        assert isinstance(exc_info.value.cause, BufferError)

    @pytest.mark.asyncio
    async def test_publish_after_close(self, producer):
        bus = KafkaEventBus("kafka:9092")
        await bus.close()
        with pytest.raises(ChannelError, match="closed"):
            await bus.publish(Event(SPEC_EVENT, "notifier"))


class TestKafkaEventBusInbound:
    def test_message_to_event(self):
        bus = KafkaEventBus("kafka:9092")
        payload = {"feature_set_reference": "default/test", "feature_set_version": 1, "job_id": "j"}
        event = bus._to_event(
            _message("feature-set-specs-ack", payload, headers=[("event_id", b"e-1"), ("source", b"job")])
        )
        assert event.event_type == ACK_EVENT
        assert event.payload == payload
        assert event.key == "default/test"
        assert event.event_id == "e-1"
        assert event.source == "job"

    def test_message_without_headers(self):
        bus = KafkaEventBus("kafka:9092")
        event = bus._to_event(_message("feature-set-specs-ack", {"a": 1}, key=None))
        assert event.key is None
        assert event.source == "kafka"

    def test_subscribed_topics_follow_patterns(self):
        bus = KafkaEventBus("kafka:9092")
        bus._subscriptions["s1"] = MagicMock(pattern=ACK_EVENT)
        assert bus._subscribed_topics() == ["feature-set-specs-ack"]
        bus._subscriptions["s2"] = MagicMock(pattern="featureset.*")
        assert bus._subscribed_topics() == ["feature-set-specs", "feature-set-specs-ack"]

    @pytest.mark.asyncio
    async def test_dispatch_isolates_handler_errors(self):
        bus = KafkaEventBus("kafka:9092")
        received = []

        async def broken(event):
            raise RuntimeError("bug")

        async def healthy(event):
            received.append(event)

        bus._subscriptions["s1"] = MagicMock(id="s1", pattern=ACK_EVENT, handler=broken)
        bus._subscriptions["s2"] = MagicMock(id="s2", pattern=ACK_EVENT, handler=healthy)
        assert await bus._dispatch(Event(ACK_EVENT, "job")) is False
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_dispatch_reports_success(self):
        bus = KafkaEventBus("kafka:9092")

        async def healthy(event):
            return None

        bus._subscriptions["s1"] = MagicMock(id="s1", pattern=ACK_EVENT, handler=healthy)
        assert await bus._dispatch(Event(ACK_EVENT, "job")) is True


class TestKafkaOffsetCommits:
    @pytest.fixture()
    def loop(self):
        loop = asyncio.new_event_loop()
        yield loop
        loop.close()

    def _bus(self, handler):
        bus = KafkaEventBus("kafka:9092", poll_timeout=0.0)
        bus._subscriptions["s1"] = MagicMock(id="s1", pattern=ACK_EVENT, handler=handler)
        return bus

    def test_commits_after_handled(self, loop):
        received = []

        async def handler(event):
            received.append(event)

        consumer = MagicMock()
        msg = _message("feature-set-specs-ack", {"job_id": "j"})
        self._bus(handler)._handle_message(consumer, loop, msg)

        assert len(received) == 1
        consumer.commit.assert_called_once_with(message=msg, asynchronous=False)
        consumer.seek.assert_not_called()

    def test_failed_handler_rewinds_without_commit(self, loop):
        async def handler(event):
            raise LockUnavailableError("job lease held")

        consumer = MagicMock()
        msg = _message("feature-set-specs-ack", {"job_id": "j"})
        self._bus(handler)._handle_message(consumer, loop, msg)

        consumer.commit.assert_not_called()
        (partition,) = consumer.seek.call_args.args
        assert (partition.topic, partition.partition, partition.offset) == ("feature-set-specs-ack", 0, 5)

    def test_unparseable_message_is_committed(self, loop):
        async def handler(event):
            raise AssertionError("not dispatched")

        consumer = MagicMock()
        msg = SimpleNamespace(
            topic=lambda: "feature-set-specs-ack",
            key=lambda: None,
            value=lambda: b"{not json",
            headers=lambda: None,
        )
        self._bus(handler)._handle_message(consumer, loop, msg)

        consumer.commit.assert_called_once_with(message=msg, asynchronous=False)
        consumer.seek.assert_not_called()
