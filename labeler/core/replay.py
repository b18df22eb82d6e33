"""
Replay Coordinator - cursor-resumable subscriptions.

A subscription moves through:

    VALIDATING -> REPLAYING -> LIVE -> CLOSED
    VALIDATING -> REJECTED -> CLOSED

The connection is registered with the hub BEFORE the backlog scan
starts. While replaying, live frames are parked on the subscription
instead of being sent. Once the backlog is exhausted the parked frames
are flushed in seq order, skipping anything the scan already sent, and
only then does the subscription go LIVE. Going LIVE happens with no
await between the final empty-buffer check and the state change, so
no frame can slip between the two paths.

Within one connection message frames leave in strictly increasing seq
order.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..errors import FutureCursor, InternalFailure, InvalidRequest, XRPCError
from ..observability import get_logger, get_metrics
from .bridge import SigningBridge
from .frames import ErrorFrame, MessageFrame
from .hub import LABELS_TOPIC, ConnectionClosed, SubscriptionHub
from .query import parse_cursor

if TYPE_CHECKING:
    from ..db.store import LabelStore

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class SubscriptionState(str, Enum):
    VALIDATING = "validating"
    REPLAYING = "replaying"
    LIVE = "live"
    REJECTED = "rejected"
    CLOSED = "closed"


# ============================================================
# TRANSPORT
# ============================================================

class FrameTransport(ABC):
    """
    The outbound half of a streaming connection.

    Implementations raise ConnectionClosed when the peer is gone.
    """

    @abstractmethod
    async def send_bytes(self, data: bytes) -> None:
        pass

    @abstractmethod
    async def close(self, code: int = CLOSE_NORMAL) -> None:
        pass


# ============================================================
# SUBSCRIPTION
# ============================================================

class Subscription:
    """One subscriber connection and its position in the log."""

    def __init__(self, transport: FrameTransport, topic: str = LABELS_TOPIC):
        self.transport = transport
        self.topic = topic
        self.state = SubscriptionState.VALIDATING
        self.last_seq = 0
        # Unbounded: only grows for the duration of one replay
        self._pending: list[MessageFrame] = []

    @property
    def is_open(self) -> bool:
        return self.state in (SubscriptionState.REPLAYING, SubscriptionState.LIVE)

    async def deliver(self, frame: MessageFrame) -> None:
        """
        Hand a live frame to this subscription (called by the hub).

        Raises:
            ConnectionClosed: If the subscription is no longer open
        """
        if self.state is SubscriptionState.REPLAYING:
            self._pending.append(frame)
            return
        if self.state is not SubscriptionState.LIVE:
            raise ConnectionClosed(f"Subscription is {self.state.value}")
        if frame.seq <= self.last_seq:
            return
        await self.send(frame)

    async def send(self, frame: MessageFrame) -> None:
        """Write a message frame and advance last_seq."""
        self.last_seq = frame.seq
        try:
            await self.transport.send_bytes(frame.to_bytes())
        except ConnectionClosed:
            self.state = SubscriptionState.CLOSED
            raise
        get_metrics().frames_sent += 1

    async def send_error(self, error: XRPCError) -> None:
        payload = error.payload
        await self.transport.send_bytes(
            ErrorFrame(error=payload["error"], message=payload["message"]).to_bytes()
        )

    async def go_live(self) -> None:
        """Flush frames parked during replay, then switch to LIVE."""
        while self._pending:
            pending = sorted(self._pending, key=lambda frame: frame.seq)
            self._pending = []
            for frame in pending:
                if frame.seq > self.last_seq:
                    await self.send(frame)
        self.state = SubscriptionState.LIVE

    @property
    def pending_count(self) -> int:
        return len(self._pending)


# ============================================================
# COORDINATOR
# ============================================================

class ReplayCoordinator:
    """
    Opens subscriptions: validates the cursor, replays the backlog and
    hands the connection over to the hub for live delivery.
    """

    def __init__(
        self,
        store: "LabelStore",
        bridge: SigningBridge,
        hub: SubscriptionHub,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._bridge = bridge
        self._hub = hub
        self._batch_size = batch_size

    async def open(self, transport: FrameTransport, cursor: Optional[str | int] = None) -> Subscription:
        """
        Open a subscription on a connected transport.

        On return the subscription is either LIVE (registered with the
        hub) or CLOSED (an error frame was sent and the transport closed).
        Never raises for client or storage errors.

        Args:
            transport: Outbound side of the connection
            cursor: Last seq the client has seen (None or 0 = live only)
        """
        sub = Subscription(transport)
        get_metrics().subscriptions_opened += 1

        try:
            start = await self._validate(cursor)
        except (InvalidRequest, FutureCursor) as e:
            get_metrics().subscriptions_rejected += 1
            logger.info("Subscription rejected", error=e.error, cursor=cursor, reason=e.message)
            sub.state = SubscriptionState.REJECTED
            await self._abort(sub, e, CLOSE_POLICY_VIOLATION)
            return sub
        except Exception:
            logger.exception("Subscription cursor check failed", cursor=cursor)
            await self._abort(sub, InternalFailure("Cursor check failed"), CLOSE_INTERNAL_ERROR)
            return sub

        if start == 0:
            sub.state = SubscriptionState.LIVE
            self._hub.register(sub.topic, sub)
            logger.info("Subscriber live", cursor=0)
            return sub

        sub.state = SubscriptionState.REPLAYING
        sub.last_seq = start
        self._hub.register(sub.topic, sub)

        try:
            replayed = await self._replay(sub)
            await sub.go_live()
        except ConnectionClosed:
            logger.info("Subscriber disconnected during replay", cursor=start, last_seq=sub.last_seq)
            self.close(sub)
            return sub
        except Exception:
            logger.exception("Replay failed", cursor=start, last_seq=sub.last_seq)
            await self._abort(sub, InternalFailure("Replay failed"), CLOSE_INTERNAL_ERROR)
            return sub

        logger.info("Subscriber live", cursor=start, replayed=replayed, last_seq=sub.last_seq)
        return sub

    def close(self, sub: Subscription) -> None:
        """Unregister a subscription. Safe to call more than once."""
        sub.state = SubscriptionState.CLOSED
        self._hub.unregister(sub.topic, sub)

    async def _validate(self, cursor: Optional[str | int]) -> int:
        start = parse_cursor(cursor)
        if start == 0:
            return 0
        head = await self._store.max_id()
        if start > head:
            raise FutureCursor("Cursor in the future.")
        return start

    async def _replay(self, sub: Subscription) -> int:
        """Send every row after sub.last_seq, in pages. Returns the row count."""
        count = 0
        while True:
            rows = await self._store.scan_from(sub.last_seq, self._batch_size)
            for row in rows:
                signed = await self._bridge.ensure_signed(row)
                await sub.send(MessageFrame.for_label(row.id, signed))
                count += 1
            if len(rows) < self._batch_size:
                return count

    async def _abort(self, sub: Subscription, error: XRPCError, code: int) -> None:
        """Send one error frame, close the transport, unregister."""
        try:
            await sub.send_error(error)
            await sub.transport.close(code)
        except ConnectionClosed:
            logger.debug("Connection gone before error frame", error=error.error)
        finally:
            self.close(sub)
