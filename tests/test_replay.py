"""
Tests for the replay coordinator: cursor validation, backlog replay and
the handoff to live delivery.
"""

import pytest

from conftest import LABELER_DID, RecordingTransport, make_label
from labeler.core import (
    ErrorFrame,
    LabelerService,
    MessageFrame,
    ReplayCoordinator,
    SubscriptionHub,
    SubscriptionState,
    ConnectionClosed,
)
from labeler.core.replay import CLOSE_INTERNAL_ERROR, CLOSE_POLICY_VIOLATION
from labeler.db import InMemoryLabelStore


class BrokenScanStore(InMemoryLabelStore):
    async def scan_from(self, cursor, limit=None):
        raise RuntimeError("disk on fire")


async def seed(service, count):
    for i in range(count):
        await service.create_label(make_label(val=f"v{i + 1}"))


class TestReplayCoordinator:

    @pytest.fixture
    def hub(self):
        return SubscriptionHub()

    @pytest.fixture
    def service(self, store, signer, hub):
        return LabelerService(LABELER_DID, store, signer, hub)

    @pytest.fixture
    def coordinator(self, store, service, hub):
        return ReplayCoordinator(store, service.bridge, hub)

    # ------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_future_cursor_rejected(self, coordinator, service, hub):
        await seed(service, 5)
        transport = RecordingTransport()

        sub = await coordinator.open(transport, "6")

        [frame] = transport.frames
        assert isinstance(frame, ErrorFrame)
        assert frame.error == "FutureCursor"
        assert transport.close_code == CLOSE_POLICY_VIOLATION
        assert sub.state is SubscriptionState.CLOSED
        assert hub.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_future_cursor_on_empty_log(self, coordinator):
        transport = RecordingTransport()
        await coordinator.open(transport, "1")
        assert [type(f) for f in transport.frames] == [ErrorFrame]

    @pytest.mark.asyncio
    async def test_malformed_cursor_rejected(self, coordinator, hub):
        transport = RecordingTransport()

        sub = await coordinator.open(transport, "abc")

        [frame] = transport.frames
        assert frame.error == "InvalidRequest"
        assert transport.close_code == CLOSE_POLICY_VIOLATION
        assert not sub.is_open
        assert hub.subscriber_count() == 0

    # ------------------------------------------------------------
    # Replay and live delivery
    # ------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_replay_then_live(self, coordinator, service):
        await seed(service, 5)
        transport = RecordingTransport()

        sub = await coordinator.open(transport, "2")
        assert transport.seqs == [3, 4, 5]
        assert sub.state is SubscriptionState.LIVE

        await service.create_label(make_label(val="v6"))
        assert transport.seqs == [3, 4, 5, 6]
        assert not transport.closed

    @pytest.mark.asyncio
    async def test_no_cursor_goes_live(self, coordinator, service, hub):
        await seed(service, 3)
        transport = RecordingTransport()

        sub = await coordinator.open(transport, None)
        assert transport.sent == []
        assert sub.state is SubscriptionState.LIVE
        assert hub.subscriber_count() == 1

        await service.create_label(make_label())
        assert transport.seqs == [4]

    @pytest.mark.asyncio
    async def test_zero_cursor_goes_live(self, coordinator, service):
        await seed(service, 2)
        transport = RecordingTransport()
        sub = await coordinator.open(transport, "0")
        assert transport.sent == []
        assert sub.state is SubscriptionState.LIVE

    @pytest.mark.asyncio
    async def test_cursor_at_head_replays_nothing(self, coordinator, service):
        await seed(service, 3)
        transport = RecordingTransport()
        sub = await coordinator.open(transport, "3")
        assert transport.sent == []
        assert sub.state is SubscriptionState.LIVE

    @pytest.mark.asyncio
    async def test_message_frames_carry_signed_labels(self, coordinator, service):
        await seed(service, 1)
        transport = RecordingTransport()
        store = service.store
        # A legacy row without a signature
        store.insert_unsigned(make_label(val="legacy"))

        await coordinator.open(transport, "1")

        [frame] = transport.frames
        assert isinstance(frame, MessageFrame)
        assert frame.seq == 2
        assert frame.labels[0].val == "legacy"
        assert frame.labels[0].sig == store.get(2).sig

    @pytest.mark.asyncio
    async def test_append_during_replay_not_missed(self, coordinator, service):
        """A label appended mid-replay arrives exactly once, in order."""
        await seed(service, 5)

        async def append_once(sent_count):
            if sent_count == 1:
                await service.create_label(make_label(val="v6"))

        transport = RecordingTransport(on_send=append_once)
        sub = await coordinator.open(transport, "2")

        assert transport.seqs == [3, 4, 5, 6]
        assert sub.state is SubscriptionState.LIVE

    @pytest.mark.asyncio
    async def test_overlap_deduplicated(self, store, service, hub):
        """Small pages pick up the mid-replay append too; it is sent once."""
        coordinator = ReplayCoordinator(store, service.bridge, hub, batch_size=1)
        await seed(service, 5)

        async def append_once(sent_count):
            if sent_count == 1:
                await service.create_label(make_label(val="v6"))

        transport = RecordingTransport(on_send=append_once)
        await coordinator.open(transport, "2")

        assert transport.seqs == [3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_paged_replay(self, store, service, hub):
        coordinator = ReplayCoordinator(store, service.bridge, hub, batch_size=2)
        await seed(service, 7)
        transport = RecordingTransport()

        await coordinator.open(transport, "1")

        assert transport.seqs == [2, 3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_two_subscribers_independent(self, coordinator, service):
        await seed(service, 4)
        early, late = RecordingTransport(), RecordingTransport()

        await coordinator.open(early, "1")
        await coordinator.open(late, "3")
        await service.create_label(make_label())

        assert early.seqs == [2, 3, 4, 5]
        assert late.seqs == [4, 5]

    # ------------------------------------------------------------
    # Failure and cancellation
    # ------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_disconnect_during_replay(self, coordinator, service, hub):
        await seed(service, 5)
        transport = RecordingTransport(fail_after=1)

        sub = await coordinator.open(transport, "1")

        assert transport.seqs == [2]
        assert sub.state is SubscriptionState.CLOSED
        assert hub.subscriber_count() == 0

        # The write path is unaffected
        await service.create_label(make_label())

    @pytest.mark.asyncio
    async def test_storage_failure_during_replay(self, signer):
        store = BrokenScanStore()
        hub = SubscriptionHub()
        service = LabelerService(LABELER_DID, store, signer, hub)
        await store.append(make_label(sig=b"s"))
        await store.append(make_label(sig=b"s"))
        coordinator = ReplayCoordinator(store, service.bridge, hub)
        transport = RecordingTransport()

        sub = await coordinator.open(transport, "1")

        [frame] = transport.frames
        assert isinstance(frame, ErrorFrame)
        assert frame.error == "InternalServerError"
        assert frame.message == "An unknown error occurred"
        assert transport.close_code == CLOSE_INTERNAL_ERROR
        assert sub.state is SubscriptionState.CLOSED
        assert hub.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_close_unregisters(self, coordinator, service, hub):
        transport = RecordingTransport()
        sub = await coordinator.open(transport, None)

        coordinator.close(sub)
        coordinator.close(sub)

        assert hub.subscriber_count() == 0
        await service.create_label(make_label())
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_closed_subscription_refuses_delivery(self, coordinator, service):
        sub = await coordinator.open(RecordingTransport(), None)
        coordinator.close(sub)
        signed = make_label().signed(b"s")
        with pytest.raises(ConnectionClosed):
            await sub.deliver(MessageFrame.for_label(1, signed))

    @pytest.mark.asyncio
    async def test_live_disconnect_dropped_by_hub(self, coordinator, service, hub):
        transport = RecordingTransport(fail_after=0)
        sub = await coordinator.open(transport, None)

        await service.create_label(make_label())

        assert sub.state is SubscriptionState.CLOSED
        assert hub.subscriber_count() == 0
