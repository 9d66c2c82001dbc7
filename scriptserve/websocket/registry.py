"""Session registry mapping session ids to live sockets.

Ids are random UUID4 strings. The mapping is guarded by a
``threading.Lock`` because script callbacks read it from the script
runtime thread while receive loops mutate it on the event loop. Iteration
order is registration order.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from scriptserve.constants import REGISTRY_CLOSE_REASON, WS_NORMAL_CLOSURE
from scriptserve.utils import generate_session_id
from scriptserve.websocket.channel import SessionState

logger = logging.getLogger(__name__)


class SessionSocket(Protocol):
    state: SessionState

    async def send_text(self, text: str) -> None: ...

    async def close(self, code: int = ..., reason: str = ...) -> None: ...


class SessionRegistry:
    def __init__(self) -> None:
        self._sockets: dict[str, SessionSocket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sockets)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sockets

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_socket(self, session_id: str) -> SessionSocket | None:
        with self._lock:
            return self._sockets.get(session_id)

    def get_id(self, socket: SessionSocket) -> str | None:
        with self._lock:
            for session_id, candidate in self._sockets.items():
                if candidate is socket:
                    return session_id
        return None

    def get_all(self) -> dict[str, SessionSocket]:
        """Snapshot of every registered session, in registration order."""
        with self._lock:
            return dict(self._sockets)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sockets)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_socket(self, socket: SessionSocket) -> str:
        """Register *socket* under a fresh id and return the id."""
        with self._lock:
            session_id = generate_session_id()
            while session_id in self._sockets:
                session_id = generate_session_id()
            self._sockets[session_id] = socket
            count = len(self._sockets)
        logger.info("[Registry] Session %s registered. Active sessions: %d", session_id, count)
        return session_id

    def discard(self, session_id: str) -> SessionSocket | None:
        """Deregister *session_id* without touching the socket."""
        with self._lock:
            return self._sockets.pop(session_id, None)

    async def remove_socket(self, session_id: str) -> None:
        """Deregister *session_id* and close it normally. Unknown ids are ignored."""
        socket = self.discard(session_id)
        if socket is None:
            return
        logger.info("[Registry] Session %s removed.", session_id)
        await socket.close(code=WS_NORMAL_CLOSURE, reason=REGISTRY_CLOSE_REASON)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(self, session_id: str, text: str) -> bool:
        """Send *text* to one session; skipped unless it is open.

        Returns True when the message was handed to the socket. Send failures
        are logged, not raised.
        """
        socket = self.get_socket(session_id)
        if socket is None or socket.state is not SessionState.OPEN:
            return False
        try:
            await socket.send_text(text)
        except Exception as exc:
            logger.warning("[Registry] Send to %s failed: %s", session_id, exc)
            return False
        return True

    async def send_message_to_all(self, text: str) -> None:
        """Best-effort broadcast to every open session."""
        for session_id, socket in self.get_all().items():
            if socket.state is not SessionState.OPEN:
                continue
            try:
                await socket.send_text(text)
            except Exception as exc:
                logger.warning("[Registry] Broadcast to %s failed: %s", session_id, exc)
