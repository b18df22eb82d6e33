"""
Event stream frames.

A frame is two concatenated CBOR objects: a header and a body.

    message: {"op": 1, "t": "#labels"}  {"seq": <id>, "labels": [<label>]}
    error:   {"op": -1}                 {"error": <name>, "message": <text>}

An error frame is always the last frame on a connection.
"""

import io
from dataclasses import dataclass
from typing import Any, Union

import cbor2

from ..schemas.label import SignedLabel

OP_MESSAGE = 1
OP_ERROR = -1
LABELS_TYPE = "#labels"


class FrameDecodeError(Exception):
    """Raised when bytes are not a valid frame."""
    pass


@dataclass(frozen=True)
class MessageFrame:
    """A #labels message carrying one or more labels at one sequence id."""
    seq: int
    labels: tuple[SignedLabel, ...]
    type: str = LABELS_TYPE

    @classmethod
    def for_label(cls, seq: int, label: SignedLabel) -> "MessageFrame":
        return cls(seq=seq, labels=(label,))

    @property
    def header(self) -> dict[str, Any]:
        return {"op": OP_MESSAGE, "t": self.type}

    @property
    def body(self) -> dict[str, Any]:
        return {"seq": self.seq, "labels": [label.to_cbor() for label in self.labels]}

    def to_bytes(self) -> bytes:
        return cbor2.dumps(self.header, canonical=True) + cbor2.dumps(self.body, canonical=True)


@dataclass(frozen=True)
class ErrorFrame:
    """A terminal error."""
    error: str
    message: str

    @property
    def header(self) -> dict[str, Any]:
        return {"op": OP_ERROR}

    @property
    def body(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message}

    def to_bytes(self) -> bytes:
        return cbor2.dumps(self.header, canonical=True) + cbor2.dumps(self.body, canonical=True)


Frame = Union[MessageFrame, ErrorFrame]


def decode_frame(data: bytes) -> Frame:
    """
    Decode frame bytes (as a subscriber would).

    Raises:
        FrameDecodeError: If the bytes are not a header followed by a body
    """
    stream = io.BytesIO(data)
    decoder = cbor2.CBORDecoder(stream)
    try:
        header = decoder.decode()
        body = decoder.decode()
    except (cbor2.CBORDecodeError, EOFError) as e:
        raise FrameDecodeError(f"Malformed frame: {e}") from e
    if stream.read(1):
        raise FrameDecodeError("Trailing bytes after frame body")
    if not isinstance(header, dict) or not isinstance(body, dict):
        raise FrameDecodeError("Frame header and body must be maps")

    op = header.get("op")
    if op == OP_ERROR:
        return ErrorFrame(error=body.get("error", ""), message=body.get("message", ""))
    if op == OP_MESSAGE:
        labels = tuple(SignedLabel(**label) for label in body.get("labels", []))
        return MessageFrame(seq=body["seq"], labels=labels, type=header.get("t", LABELS_TYPE))
    raise FrameDecodeError(f"Unknown frame op: {op!r}")
