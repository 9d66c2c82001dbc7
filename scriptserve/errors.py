"""Error taxonomy — what can go wrong per request or per session.

Every failure is contained at the request or session boundary. HTTP
clients only ever see a bare status code; WebSocket clients see the
connection close. Details go to the log as structured records.

Error codes
-----------
E_NOT_FOUND        Requested or default script, or static file, is absent (404).
E_SCRIPT_RUNTIME   Uncaught exception inside a running script (500).
E_SCRIPT_LOAD      I/O failure reading a script or supporting file (500).
E_UPGRADE_FAILED   WebSocket handshake failed (500, connection closed).
E_SESSION_IO       Error inside a session's receive/send loop (session torn down).
E_INTERNAL         Any other failure raised by a middleware unit (500).
E_UNAVAILABLE      Connection arrived after the listener stopped accepting (503).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from scriptserve.constants import WS_INTERNAL_ERROR
from scriptserve.pipeline.connection import ResponseDescriptor
from scriptserve.telemetry import current_trace_id

if TYPE_CHECKING:
    from scriptserve.websocket.channel import WebSocketChannel

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    E_NOT_FOUND = "E_NOT_FOUND"
    E_SCRIPT_RUNTIME = "E_SCRIPT_RUNTIME"
    E_SCRIPT_LOAD = "E_SCRIPT_LOAD"
    E_UPGRADE_FAILED = "E_UPGRADE_FAILED"
    E_SESSION_IO = "E_SESSION_IO"
    E_INTERNAL = "E_INTERNAL"
    E_UNAVAILABLE = "E_UNAVAILABLE"


HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.E_NOT_FOUND: 404,
    ErrorCode.E_SCRIPT_RUNTIME: 500,
    ErrorCode.E_SCRIPT_LOAD: 500,
    ErrorCode.E_UPGRADE_FAILED: 500,
    ErrorCode.E_SESSION_IO: 500,
    ErrorCode.E_INTERNAL: 500,
    ErrorCode.E_UNAVAILABLE: 503,
}


class ServerException(Exception):
    """Base class for failures that map onto an :class:`ErrorCode`."""

    code: ErrorCode = ErrorCode.E_INTERNAL

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.code]


class NotFoundError(ServerException):
    code = ErrorCode.E_NOT_FOUND


class ScriptRuntimeError(ServerException):
    code = ErrorCode.E_SCRIPT_RUNTIME


class ScriptLoadError(ServerException):
    code = ErrorCode.E_SCRIPT_LOAD


class UpgradeFailure(ServerException):
    code = ErrorCode.E_UPGRADE_FAILED


class SessionIOError(ServerException):
    code = ErrorCode.E_SESSION_IO


@dataclass
class ServerError:
    code: str
    message: str
    session_id: str = ""
    details: dict[str, Any] | None = field(default=None)
    trace_id: str = field(default_factory=current_trace_id)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "session_id": self.session_id,
        }
        if self.details:
            d["details"] = self.details
        if self.trace_id:
            d["trace_id"] = self.trace_id
        return d


def error_response(code: ErrorCode) -> ResponseDescriptor:
    """Status-only response for *code*: no content type, no body."""
    return ResponseDescriptor(status_code=HTTP_STATUS[code])


async def close_with_error(channel: WebSocketChannel, error: ServerError) -> None:
    """Log *error* and close *channel* with an internal-error close code.

    Silently catches close failures (the peer may already be gone).
    """
    logger.error("[ServerError] %s", error.to_dict())
    try:
        await channel.close(code=WS_INTERNAL_ERROR, reason=error.code)
    except Exception as exc:
        logger.debug("[ServerError] Failed to close session %s: %s", error.session_id, exc)
