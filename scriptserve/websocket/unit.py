"""WebSocketUnit — upgrades connections and runs one receive loop per session.

Per session: accept the upgrade, register with the :class:`SessionRegistry`,
then read frames in arrival order. Text and binary frames are reassembled
into messages and handed to the matching handler; the handler's reply goes
back on the same session before the next frame is read. A close frame
deregisters the session and ends the loop. Any error is logged and tears
down only this session.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
from typing import Awaitable, Callable

from scriptserve.errors import (
    ErrorCode,
    ServerError,
    UpgradeFailure,
    close_with_error,
    error_response,
)
from scriptserve.pipeline.connection import Connection
from scriptserve.pipeline.middleware import AcceptPredicate, MiddlewareUnit, ProcessResult
from scriptserve.telemetry import get_tracer
from scriptserve.websocket.channel import SessionState, WebSocketChannel
from scriptserve.websocket.frames import FrameAccumulator, FrameKind
from scriptserve.websocket.registry import SessionRegistry


TextHandler = Callable[[str, str], Awaitable["str | None"]]
BinaryHandler = Callable[[str, bytes], Awaitable["bytes | None"]]

_DISPOSE_TIMEOUT = 5.0


async def echo_binary(session_id: str, data: bytes) -> bytes:
    """Default binary handler: send the message straight back.

    Extension point. Binary messages get no interpretation beyond this echo.
    """
    return data


class WebSocketUnit(MiddlewareUnit):
    name = "websocket"

    def __init__(
        self,
        registry: SessionRegistry,
        on_text: TextHandler,
        on_binary: BinaryHandler = echo_binary,
        accept: AcceptPredicate | None = None,
        channel_factory: Callable[..., WebSocketChannel] = WebSocketChannel,
    ) -> None:
        super().__init__(accept)
        self._registry = registry
        self._on_text = on_text
        self._on_binary = on_binary
        self._channel_factory = channel_factory
        self._connection_count = 0
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def active_count(self) -> int:
        """Number of sessions whose receive loop is running."""
        return self._connection_count

    def default_accept(self, connection: Connection) -> bool:
        return connection.request.is_websocket_request

    async def process_request(self, connection: Connection) -> ProcessResult:
        if connection.websocket is None:
            return ProcessResult.CONTINUE

        self._loop = asyncio.get_running_loop()
        channel = self._channel_factory(connection.websocket)
        try:
            await channel.accept()
        except UpgradeFailure as exc:
            self.log.error("[WebSocket] Upgrade of %s failed: %s", connection.request.raw_url, exc)
            connection.response.write(error_response(exc.code))
            await channel.close()
            return ProcessResult.STOP_WITH_ERROR

        session_id = self._registry.add_socket(channel)
        self._connection_count += 1
        self.log.info(
            "[WebSocket] Client %s connected. Active connections: %d",
            session_id,
            self._connection_count,
        )
        try:
            with get_tracer().start_as_current_span(
                "websocket.session", attributes={"session.id": session_id}
            ):
                await self._receive_loop(session_id, channel)
        finally:
            self._connection_count -= 1
        return ProcessResult.STOP

    async def _receive_loop(self, session_id: str, channel: WebSocketChannel) -> None:
        accumulator = FrameAccumulator()
        failure: ServerError | None = None
        try:
            while channel.state is SessionState.OPEN:
                frame = await channel.receive()
                if frame.kind is FrameKind.CLOSE:
                    self.log.info("[WebSocket] Client %s closed the connection.", session_id)
                    await self._registry.remove_socket(session_id)
                    break

                self.log.debug(
                    "[WebSocket] Client %s frame kind=%s size=%d end=%s",
                    session_id,
                    frame.kind.value,
                    len(frame.payload),
                    frame.end_of_message,
                )
                message = accumulator.feed(frame)
                if message is None:
                    continue

                if message.kind is FrameKind.TEXT:
                    reply = await self._on_text(session_id, message.text or "")
                    if reply is not None:
                        await channel.send_text(reply)
                else:
                    data = await self._on_binary(session_id, message.data)
                    if data is not None:
                        await channel.send_bytes(data)
        except Exception as exc:
            self.log.error("[WebSocket] client %s: %s", session_id, exc)
            failure = ServerError(
                code=ErrorCode.E_SESSION_IO.value,
                message=str(exc),
                session_id=session_id,
            )
        finally:
            self._registry.discard(session_id)
            if failure is not None:
                await close_with_error(channel, failure)
            else:
                await channel.close()

    def dispose(self) -> None:
        """Close every registered session with a normal closure.

        The closes run on the loop that owns the sessions. Called from another
        thread this waits for them; called on that loop it only schedules them.
        """
        session_ids = self._registry.ids()
        loop = self._loop
        if not session_ids or loop is None or loop.is_closed() or not loop.is_running():
            return

        self.log.info("[WebSocket] Closing %d sessions.", len(session_ids))
        futures = [
            asyncio.run_coroutine_threadsafe(self._registry.remove_socket(session_id), loop)
            for session_id in session_ids
        ]
        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            return

        for session_id, future in zip(session_ids, futures):
            try:
                future.result(timeout=_DISPOSE_TIMEOUT)
            except concurrent.futures.TimeoutError:
                future.cancel()
                self.log.warning("[WebSocket] Closing %s timed out.", session_id)
            except Exception as exc:
                self.log.warning("[WebSocket] Closing %s failed: %s", session_id, exc)
