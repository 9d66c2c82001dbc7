"""Listener — accepts connections and hands them to workers.

The ASGI surface is a FastAPI app with one catch-all HTTP route and one
catch-all WebSocket route. Each entry point wraps the request into a
:class:`Connection` and pushes it onto the work channel (an
``asyncio.Queue``). The accept loop consumes the channel and spawns one
worker task per connection; the entry point waits for the worker to close
the connection and then flushes the response sink.

``start()`` binds the prefixes itself and serves them with an embedded
uvicorn server; the app can also be driven in-process (``TestClient``,
``httpx.ASGITransport``) without binding anything.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from typing import Any, AsyncGenerator, Awaitable, Callable, Generator, Iterable
from urllib.parse import urlsplit

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from starlette.responses import Response
from starlette.websockets import WebSocketState

from scriptserve import __version__
from scriptserve.constants import ANY_HOST, SERVER_NAME, WILDCARD_HOSTS
from scriptserve.errors import ErrorCode, error_response
from scriptserve.pipeline.connection import Connection, ResponseSink

logger = logging.getLogger(__name__)

Handler = Callable[[Connection], Awaitable[Any]]

_HTTP_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


def parse_prefix(prefix: str) -> tuple[str, int]:
    """Return the ``(host, port)`` a prefix such as ``http://+:8080/`` binds.

    ``+`` and ``*`` bind every interface. Only plain HTTP prefixes are
    accepted.
    """
    parts = urlsplit(prefix)
    if parts.scheme != "http":
        raise ValueError(f"Unsupported listener prefix {prefix!r}: only http:// is served.")
    host = parts.hostname
    if not host:
        raise ValueError(f"Listener prefix {prefix!r} has no host.")
    if host in WILDCARD_HOSTS:
        host = ANY_HOST
    return host, parts.port or 80


def _upgraded(connection: Connection) -> bool:
    websocket = connection.websocket
    return websocket is not None and websocket.application_state != WebSocketState.CONNECTING


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    @contextlib.contextmanager
    def capture_signals(self) -> Generator[None, None, None]:
        yield


class Listener:
    """Bind prefixes, accept connections, schedule one worker per connection."""

    def __init__(
        self,
        prefixes: Iterable[str],
        handler: Handler,
        on_start: Callable[[], None] | None = None,
        on_exception: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._prefixes = list(prefixes)
        if not self._prefixes:
            raise ValueError("At least one listener prefix is required.")
        self._endpoints = list(dict.fromkeys(parse_prefix(p) for p in self._prefixes))
        self._handler = handler
        self._on_start = on_start
        self._on_exception = on_exception

        self._channel: asyncio.Queue[Connection] | None = None
        self._accept_task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._stopped = False
        self._failure: BaseException | None = None

        self._started = False
        self._sockets: list[socket.socket] = []
        self._server: _EmbeddedServer | None = None
        self._serve_task: asyncio.Task | None = None

        self.app = self._build_app()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def prefixes(self) -> list[str]:
        return list(self._prefixes)

    @property
    def addresses(self) -> list[tuple[str, int]]:
        """Addresses actually bound by :meth:`start` (resolves port 0)."""
        return [sock.getsockname()[:2] for sock in self._sockets]

    @property
    def is_accepting(self) -> bool:
        return self._accept_task is not None and not self._accept_task.done()

    @property
    def failure(self) -> BaseException | None:
        return self._failure

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def submit(self, connection: Connection) -> None:
        """Queue *connection* for a worker, or answer 503 when not accepting."""
        if not self._ensure_accepting():
            connection.response.write(error_response(ErrorCode.E_UNAVAILABLE))
            connection.close()
            return
        assert self._channel is not None
        await self._channel.put(connection)

    async def start(self) -> None:
        """Bind every prefix and serve it until :meth:`stop`."""
        if self._started:
            raise RuntimeError("Listener has already started.")
        self._started = True

        try:
            for host, port in self._endpoints:
                self._sockets.append(socket.create_server((host, port)))
        except OSError:
            self._close_sockets()
            raise

        config = uvicorn.Config(
            self.app,
            lifespan="on",
            log_config=None,
            access_log=False,
            server_header=False,
            date_header=False,
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=self._sockets), name="listener-serve"
        )
        self._serve_task.add_done_callback(self._serve_finished)

        while not self._server.started and not self._serve_task.done():
            await asyncio.sleep(0.01)
        if not self._server.started:
            self._close_sockets()
            raise RuntimeError("Listener failed to start.")
        logger.info("[Listener] Listening on %s", ", ".join(self._prefixes))

    async def stop(self) -> None:
        """Stop accepting and close the bound endpoints.

        In-flight workers are left to finish on their own.
        """
        self._stopped = True
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await asyncio.wait({self._serve_task})
        await self._stop_accepting()
        self._close_sockets()
        self._started = False
        logger.info("[Listener] Stopped with %d connections in flight.", self.in_flight_count())

    async def wait_closed(self) -> None:
        """Return once the embedded server has exited, for any reason."""
        if self._serve_task is not None:
            await asyncio.wait({self._serve_task})

    # ------------------------------------------------------------------
    # Accept loop and workers
    # ------------------------------------------------------------------

    def _ensure_accepting(self) -> bool:
        if self._stopped or self._failure is not None:
            return False
        if self._accept_task is None:
            self._channel = asyncio.Queue()
            self._accept_task = asyncio.create_task(self._accept_loop(), name="listener-accept")
        return not self._accept_task.done()

    async def _accept_loop(self) -> None:
        assert self._channel is not None
        try:
            if self._on_start is not None:
                self._on_start()
            while True:
                connection = await self._channel.get()
                try:
                    task = asyncio.create_task(self._work(connection))
                except Exception as exc:
                    logger.error("[Listener] Could not schedule %s: %s", connection.request.raw_url, exc)
                    connection.close()
                    continue
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report_failure(exc)
        finally:
            self._drain_channel()

    async def _work(self, connection: Connection) -> None:
        try:
            await self._handler(connection)
        except Exception as exc:
            logger.error(
                "[Listener] Dispatch of %s failed: %s",
                connection.request.raw_url,
                exc,
                exc_info=True,
            )
            if not connection.response.written:
                connection.response.write(error_response(ErrorCode.E_INTERNAL))
        finally:
            if _upgraded(connection):
                # the HTTP sink of an upgraded session is never sent
                connection.response.discard()
            connection.close()

    def _drain_channel(self) -> None:
        if self._channel is None:
            return
        while not self._channel.empty():
            connection = self._channel.get_nowait()
            if not connection.response.written:
                connection.response.write(error_response(ErrorCode.E_UNAVAILABLE))
            connection.close()

    async def _stop_accepting(self) -> None:
        task = self._accept_task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _report_failure(self, exc: BaseException) -> None:
        if self._failure is not None:
            return
        self._failure = exc
        if self._on_exception is not None:
            self._on_exception(exc)
        else:
            logger.critical("[Listener] Accept loop failed: %s", exc)
        if self._server is not None:
            self._server.should_exit = True

    def _serve_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not self._stopped:
            self._report_failure(exc)

    def _close_sockets(self) -> None:
        for sock in self._sockets:
            with contextlib.suppress(OSError):
                sock.close()

    # ------------------------------------------------------------------
    # ASGI surface
    # ------------------------------------------------------------------

    def _build_app(self) -> FastAPI:
        app = FastAPI(
            title=SERVER_NAME,
            version=__version__,
            lifespan=self._lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        app.add_api_route(
            "/{path:path}",
            self._http_entry,
            methods=_HTTP_METHODS,
            include_in_schema=False,
        )
        app.add_api_websocket_route("/{path:path}", self._websocket_entry)
        return app

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncGenerator[None, None]:
        self._ensure_accepting()
        yield
        self._stopped = True
        await self._stop_accepting()

    async def _http_entry(self, request: Request) -> Response:
        connection = Connection.from_http(request)
        await self.submit(connection)
        await connection.wait_closed()
        return connection.response.build_response()

    async def _websocket_entry(self, websocket: WebSocket) -> None:
        connection = Connection.from_http(websocket)
        await self.submit(connection)
        await connection.wait_closed()
        if websocket.application_state == WebSocketState.CONNECTING:
            await self._deny(websocket, connection.response)

    async def _deny(self, websocket: WebSocket, sink: ResponseSink) -> None:
        """Reject a WebSocket no unit accepted, with the sink's HTTP status."""
        try:
            await websocket.send_denial_response(sink.build_response())
        except RuntimeError as exc:
            logger.debug("[Listener] Denial response unsupported (%s), closing instead.", exc)
            sink.discard()
            await websocket.close()
