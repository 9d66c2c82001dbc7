"""Connection model shared by the listener, the dispatcher and the units.

A :class:`Connection` couples an immutable :class:`RequestInfo` snapshot
with a write-once :class:`ResponseSink`. WebSocket connections also carry
the Starlette ``WebSocket`` so the WebSocket unit can complete the upgrade.
"""

from __future__ import annotations

import asyncio
import ipaddress
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Iterator

from starlette.requests import HTTPConnection
from starlette.responses import Response, StreamingResponse
from starlette.websockets import WebSocket

from scriptserve.constants import STREAM_CHUNK_SIZE

_LOOPBACK_NAMES = {"localhost"}


def _endpoint(address: Any) -> str | None:
    if not address:
        return None
    host, port = address[0], address[1]
    return f"{host}:{port}"


def _is_loopback(host: str | None) -> bool:
    if not host:
        return False
    if host in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _split_header_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class RequestInfo:
    """Read-only snapshot of everything a handler may look at."""

    http_method: str
    path: str
    raw_url: str
    headers: tuple[tuple[str, str], ...] = ()
    query_string: tuple[tuple[str, str], ...] = ()
    protocol_version: str = "1.1"
    content_length64: int = -1
    has_entity_body: bool = False
    keep_alive: bool = True
    is_websocket_request: bool = False
    is_secure_connection: bool = False
    is_local: bool = False
    is_authenticated: bool = False
    remote_end_point: str | None = None
    local_end_point: str | None = None

    def header(self, name: str) -> str | None:
        """First value of header *name* (case-insensitive), or ``None``."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")

    @property
    def content_type(self) -> str | None:
        return self.header("content-type")

    @property
    def url_referrer(self) -> str | None:
        return self.header("referer")

    @property
    def user_host_name(self) -> str | None:
        return self.header("host")

    @property
    def user_host_address(self) -> str | None:
        return self.local_end_point

    @property
    def user_languages(self) -> tuple[str, ...]:
        return _split_header_list(self.header("accept-language"))

    @property
    def accept_types(self) -> tuple[str, ...]:
        return _split_header_list(self.header("accept"))

    @classmethod
    def from_connection(cls, conn: HTTPConnection) -> "RequestInfo":
        scope = conn.scope
        headers = tuple(
            (name.decode("latin-1"), value.decode("latin-1")) for name, value in conn.headers.raw
        )
        raw_path = scope.get("raw_path")
        path_part = raw_path.decode("latin-1") if raw_path else scope.get("path", "/")
        query = scope.get("query_string", b"").decode("latin-1")
        raw_url = f"{path_part}?{query}" if query else path_part

        content_length = conn.headers.get("content-length")
        try:
            length = int(content_length) if content_length is not None else -1
        except ValueError:
            length = -1
        chunked = "chunked" in conn.headers.get("transfer-encoding", "").lower()

        http_version = scope.get("http_version", "1.1")
        connection_header = conn.headers.get("connection", "").lower()
        if http_version == "1.0":
            keep_alive = "keep-alive" in connection_header
        else:
            keep_alive = "close" not in connection_header

        client = scope.get("client")
        user = scope.get("user")
        return cls(
            http_method=scope.get("method", "GET"),
            path=scope.get("path", "/"),
            raw_url=raw_url,
            headers=headers,
            query_string=tuple(conn.query_params.multi_items()),
            protocol_version=http_version,
            content_length64=length,
            has_entity_body=length > 0 or chunked,
            keep_alive=keep_alive,
            is_websocket_request=scope["type"] == "websocket",
            is_secure_connection=conn.url.scheme in ("https", "wss"),
            is_local=_is_loopback(client[0] if client else None),
            is_authenticated=bool(getattr(user, "is_authenticated", False)),
            remote_end_point=_endpoint(client),
            local_end_point=_endpoint(scope.get("server")),
        )

    def to_host_fields(self) -> dict[str, Any]:
        """Request fields as scripts see them under ``host.request``.

        Keys are camelCase; fields with no value are left out so scripts
        observe them as nil.
        """
        fields: dict[str, Any] = {
            "rawUrl": self.raw_url,
            "userAgent": self.user_agent,
            "userHostName": self.user_host_name,
            "userHostAddress": self.user_host_address,
            "httpMethod": self.http_method,
            "contentType": self.content_type,
            "keepAlive": self.keep_alive,
            "isWebSocketRequest": self.is_websocket_request,
            "isSecureConnection": self.is_secure_connection,
            "isLocal": self.is_local,
            "isAuthenticated": self.is_authenticated,
            "hasEntityBody": self.has_entity_body,
            "contentLength64": self.content_length64,
            "urlReferrer": self.url_referrer,
            "remoteEndPoint": self.remote_end_point,
            "protocolVersion": self.protocol_version,
            "localEndPoint": self.local_end_point,
            "userLanguages": list(self.user_languages),
            "acceptTypes": list(self.accept_types),
            "queryString": [{"name": n, "value": v} for n, v in self.query_string],
            "headers": [{"name": n, "value": v} for n, v in self.headers],
        }
        return {key: value for key, value in fields.items() if value is not None}


@dataclass
class ResponseDescriptor:
    """Status, content type, headers and body produced by a handler.

    ``body`` is either bytes or an open binary file which is streamed and
    closed when the response is sent.
    """

    status_code: int
    mime_type: str | None = None
    headers: dict[str, str] | None = None
    body: bytes | BinaryIO | None = None


def _iter_file(handle: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            chunk = handle.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()


class ResponseSink:
    """Write-once response slot for a connection.

    A connection nobody wrote to answers 404 with an empty body.
    """

    def __init__(self) -> None:
        self._descriptor: ResponseDescriptor | None = None

    @property
    def written(self) -> bool:
        return self._descriptor is not None

    @property
    def descriptor(self) -> ResponseDescriptor | None:
        return self._descriptor

    @property
    def status_code(self) -> int:
        return self._descriptor.status_code if self._descriptor else 404

    def write(self, descriptor: ResponseDescriptor) -> None:
        if self._descriptor is not None:
            raise RuntimeError("Response has already been written.")
        self._descriptor = descriptor

    def discard(self) -> None:
        """Release a file body that will never be sent."""
        if self._descriptor is not None and hasattr(self._descriptor.body, "close"):
            self._descriptor.body.close()  # type: ignore[union-attr]

    def build_response(self) -> Response:
        descriptor = self._descriptor or ResponseDescriptor(status_code=404)
        headers = dict(descriptor.headers or {})
        body = descriptor.body
        if body is None or isinstance(body, (bytes, bytearray)):
            return Response(
                content=bytes(body or b""),
                status_code=descriptor.status_code,
                headers=headers,
                media_type=descriptor.mime_type,
            )

        try:
            size = body.seek(0, 2)
            body.seek(0)
            headers.setdefault("Content-Length", str(size))
        except (AttributeError, OSError):
            pass
        return StreamingResponse(
            _iter_file(body),
            status_code=descriptor.status_code,
            headers=headers,
            media_type=descriptor.mime_type,
        )


@dataclass
class Connection:
    """An accepted client transport, owned by one worker until closed."""

    request: RequestInfo
    response: ResponseSink = field(default_factory=ResponseSink)
    websocket: WebSocket | None = None
    _closed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def from_http(cls, conn: HTTPConnection) -> "Connection":
        websocket = conn if isinstance(conn, WebSocket) else None
        return cls(request=RequestInfo.from_connection(conn), websocket=websocket)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Mark the connection finished; the listener then flushes the sink."""
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()
