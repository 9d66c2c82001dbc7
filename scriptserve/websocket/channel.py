"""Frame-level adapter over a Starlette ``WebSocket``.

Tracks the session state (``CONNECTING → OPEN → CLOSING → CLOSED``) on its
own so the registry and the receive loop never have to inspect Starlette
internals. The ASGI server delivers whole messages, so every received
frame carries ``end_of_message=True``.
"""

from __future__ import annotations

import asyncio
import enum
import logging

from starlette.websockets import WebSocket

from scriptserve.constants import WS_NORMAL_CLOSURE
from scriptserve.errors import UpgradeFailure
from scriptserve.websocket.frames import Frame, FrameKind

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class WebSocketChannel:
    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._send_lock = asyncio.Lock()
        self._peer_closed = False
        self.state = SessionState.CONNECTING

    async def accept(self) -> None:
        try:
            await self._ws.accept()
        except Exception as exc:
            raise UpgradeFailure(f"handshake failed: {exc}") from exc
        self.state = SessionState.OPEN

    async def receive(self) -> Frame:
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            self._peer_closed = True
            self.state = SessionState.CLOSING
            return Frame(FrameKind.CLOSE)
        text = message.get("text")
        if text is not None:
            return Frame(FrameKind.TEXT, text.encode("utf-8"))
        return Frame(FrameKind.BINARY, message.get("bytes") or b"")

    async def send_text(self, text: str) -> None:
        async with self._send_lock:
            await self._ws.send_text(text)

    async def send_bytes(self, data: bytes) -> None:
        async with self._send_lock:
            await self._ws.send_bytes(data)

    async def close(self, code: int = WS_NORMAL_CLOSURE, reason: str = "") -> None:
        """Close the session, best-effort; a no-op once closed."""
        if self.state is SessionState.CLOSED:
            return
        handshake_done = self.state is not SessionState.CONNECTING
        self.state = SessionState.CLOSED
        if self._peer_closed or not handshake_done:
            return
        try:
            async with self._send_lock:
                await self._ws.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("[WebSocket] Close failed: %s", exc)
