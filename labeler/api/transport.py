"""
WebSocket side of the event stream.

Adapts a Starlette WebSocket to the FrameTransport the replay
coordinator writes to. Any failure to write means the peer is gone.
"""

from fastapi import WebSocket, WebSocketDisconnect

from ..core import ConnectionClosed, FrameTransport
from ..core.replay import CLOSE_NORMAL


class WebSocketTransport(FrameTransport):
    """Binary frames over an accepted WebSocket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_bytes(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionClosed("WebSocket already closed")
        try:
            await self._websocket.send_bytes(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise ConnectionClosed(str(e)) from e

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close(code=code)
        except (RuntimeError, OSError) as e:
            raise ConnectionClosed(str(e)) from e

    def mark_closed(self) -> None:
        """Record a close initiated by the peer."""
        self._closed = True
