"""
Shared fixtures for the labeler test suite.
"""

import pytest

from labeler.core import ConnectionClosed, Ed25519Signer, FrameTransport, decode_frame
from labeler.db import InMemoryLabelStore
from labeler.schemas import Label

LABELER_DID = "did:plc:labeler"


def make_label(**overrides) -> Label:
    """A candidate label with sensible defaults."""
    fields = {
        "src": LABELER_DID,
        "uri": "at://did:plc:abc/app.bsky.feed.post/1",
        "val": "spam",
        "cts": "2024-01-01T00:00:00.000Z",
    }
    fields.update(overrides)
    return Label(**fields)


class RecordingTransport(FrameTransport):
    """
    In-memory transport that records every frame.

    fail_after: raise ConnectionClosed on that many sends and after.
    on_send: coroutine run after each recorded send (to append mid-replay).
    """

    def __init__(self, fail_after=None, on_send=None):
        self.sent: list[bytes] = []
        self.close_code = None
        self._fail_after = fail_after
        self._on_send = on_send

    @property
    def closed(self) -> bool:
        return self.close_code is not None

    @property
    def frames(self):
        return [decode_frame(data) for data in self.sent]

    @property
    def seqs(self) -> list[int]:
        return [frame.seq for frame in self.frames if hasattr(frame, "seq")]

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionClosed("closed")
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise ConnectionClosed("peer went away")
        self.sent.append(data)
        if self._on_send is not None:
            await self._on_send(len(self.sent))

    async def close(self, code: int = 1000) -> None:
        self.close_code = code


@pytest.fixture
def keypair():
    return Ed25519Signer.generate_keypair()


@pytest.fixture
def signer(keypair):
    private_key, _ = keypair
    return Ed25519Signer(private_key)


@pytest.fixture
def public_key(keypair):
    return keypair[1]


@pytest.fixture
def store():
    return InMemoryLabelStore()
