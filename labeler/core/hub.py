"""
Subscription Hub - in-memory registry of live subscribers.

Owned by the server instance (never a module-level global). Handlers
run on one event loop and the registry is only mutated between
awaits, so no lock is needed.

publish() delivers to every subscriber registered on the topic. A
subscriber whose delivery fails is dropped; the others still receive
the frame. There is no buffering for disconnected consumers: they
catch up through replay when they reconnect.
"""

from typing import Protocol

from ..observability import get_logger, get_metrics
from .frames import MessageFrame

logger = get_logger(__name__)

LABELS_TOPIC = "com.atproto.label.subscribeLabels"


class ConnectionClosed(Exception):
    """Raised when sending to a connection that is gone."""
    pass


class Subscriber(Protocol):
    """Anything that can receive a message frame."""

    async def deliver(self, frame: MessageFrame) -> None:
        ...


class SubscriptionHub:
    """Topic -> set of subscribers."""

    def __init__(self):
        self._topics: dict[str, set[Subscriber]] = {}

    def register(self, topic: str, subscriber: Subscriber) -> None:
        """Add a subscriber to a topic."""
        subscribers = self._topics.setdefault(topic, set())
        if subscriber not in subscribers:
            subscribers.add(subscriber)
            get_metrics().active_subscribers += 1

    def unregister(self, topic: str, subscriber: Subscriber) -> None:
        """Remove a subscriber; drops the topic once it is empty."""
        subscribers = self._topics.get(topic)
        if not subscribers or subscriber not in subscribers:
            return
        subscribers.discard(subscriber)
        get_metrics().active_subscribers -= 1
        if not subscribers:
            del self._topics[topic]

    def subscribers(self, topic: str) -> frozenset:
        return frozenset(self._topics.get(topic, ()))

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._topics.get(topic, ()))
        return sum(len(subs) for subs in self._topics.values())

    def has_topic(self, topic: str) -> bool:
        return topic in self._topics

    async def publish(self, topic: str, frame: MessageFrame) -> int:
        """
        Deliver a frame to every subscriber of a topic.

        Iterates over a snapshot: subscribers may come and go while a
        delivery is suspended.

        Returns:
            Number of subscribers the frame was delivered to
        """
        delivered = 0
        for subscriber in list(self._topics.get(topic, ())):
            try:
                await subscriber.deliver(frame)
                delivered += 1
            except ConnectionClosed:
                logger.debug("Dropping closed subscriber", topic=topic, seq=frame.seq)
                self.unregister(topic, subscriber)
            except Exception:
                get_metrics().send_failures += 1
                logger.exception("Delivery to subscriber failed", topic=topic, seq=frame.seq)
                self.unregister(topic, subscriber)
        return delivered
