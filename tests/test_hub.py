"""
Tests for the subscription hub: registry and fan-out.
"""

import pytest

from conftest import make_label
from labeler.core import LABELS_TOPIC, ConnectionClosed, MessageFrame, SubscriptionHub
from labeler.observability import get_metrics


class FakeSubscriber:
    def __init__(self, error=None):
        self.frames = []
        self._error = error

    async def deliver(self, frame):
        if self._error is not None:
            raise self._error
        self.frames.append(frame)


def frame(seq):
    signed = make_label().signed(b"s" * 64)
    return MessageFrame.for_label(seq, signed)


class TestSubscriptionHub:

    @pytest.fixture
    def hub(self):
        return SubscriptionHub()

    def test_register_and_unregister(self, hub):
        sub = FakeSubscriber()
        hub.register(LABELS_TOPIC, sub)
        assert hub.subscriber_count(LABELS_TOPIC) == 1

        hub.unregister(LABELS_TOPIC, sub)
        assert hub.subscriber_count() == 0

    def test_no_dangling_empty_topics(self, hub):
        sub = FakeSubscriber()
        hub.register(LABELS_TOPIC, sub)
        hub.unregister(LABELS_TOPIC, sub)
        assert not hub.has_topic(LABELS_TOPIC)

    def test_unregister_unknown_is_noop(self, hub):
        hub.unregister(LABELS_TOPIC, FakeSubscriber())
        assert hub.subscriber_count() == 0

    def test_register_twice_counts_once(self, hub):
        sub = FakeSubscriber()
        hub.register(LABELS_TOPIC, sub)
        hub.register(LABELS_TOPIC, sub)
        assert hub.subscriber_count(LABELS_TOPIC) == 1

    def test_active_subscriber_gauge(self, hub):
        before = get_metrics().active_subscribers
        sub = FakeSubscriber()
        hub.register(LABELS_TOPIC, sub)
        assert get_metrics().active_subscribers == before + 1
        hub.unregister(LABELS_TOPIC, sub)
        assert get_metrics().active_subscribers == before

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self, hub):
        subs = [FakeSubscriber() for _ in range(3)]
        for sub in subs:
            hub.register(LABELS_TOPIC, sub)

        delivered = await hub.publish(LABELS_TOPIC, frame(1))

        assert delivered == 3
        assert all([f.seq for f in sub.frames] == [1] for sub in subs)

    @pytest.mark.asyncio
    async def test_publish_other_topic_ignored(self, hub):
        sub = FakeSubscriber()
        hub.register("some.other.topic", sub)
        assert await hub.publish(LABELS_TOPIC, frame(1)) == 0
        assert sub.frames == []

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, hub):
        """One broken connection does not stop delivery to the others."""
        healthy_a = FakeSubscriber()
        broken = FakeSubscriber(error=RuntimeError("socket exploded"))
        healthy_b = FakeSubscriber()
        for sub in (healthy_a, broken, healthy_b):
            hub.register(LABELS_TOPIC, sub)

        failures_before = get_metrics().send_failures
        delivered = await hub.publish(LABELS_TOPIC, frame(1))

        assert delivered == 2
        assert [f.seq for f in healthy_a.frames] == [1]
        assert [f.seq for f in healthy_b.frames] == [1]
        assert broken not in hub.subscribers(LABELS_TOPIC)
        assert get_metrics().send_failures == failures_before + 1

    @pytest.mark.asyncio
    async def test_closed_connection_dropped(self, hub):
        gone = FakeSubscriber(error=ConnectionClosed("bye"))
        hub.register(LABELS_TOPIC, gone)

        await hub.publish(LABELS_TOPIC, frame(1))

        assert hub.subscriber_count() == 0
        assert not hub.has_topic(LABELS_TOPIC)
