"""The WebServer facade: a dispatch pipeline behind a listener."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from fastapi import FastAPI

from scriptserve.constants import SERVER_NAME
from scriptserve.pipeline.connection import Connection
from scriptserve.pipeline.dispatcher import DispatchPipeline
from scriptserve.pipeline.listener import Listener
from scriptserve.pipeline.middleware import MiddlewareUnit, ProcessResult

logger = logging.getLogger(__name__)

_DISPOSED_MESSAGE = "Web server has already been disposed. Create a new instance to start again."


class WebServer:
    """Owns the pipeline and the listener; one start/stop cycle per instance."""

    def __init__(
        self,
        prefixes: Iterable[str],
        units: Iterable[MiddlewareUnit],
        log: logging.Logger | None = None,
    ) -> None:
        self.log = log or logger
        self._pipeline = DispatchPipeline(units, self.log)
        self._listener = Listener(
            prefixes,
            self._dispatch,
            on_start=self._listener_started,
            on_exception=self._listener_failed,
        )
        self._disposed = False

    @property
    def prefixes(self) -> list[str]:
        return self._listener.prefixes

    @property
    def middleware(self) -> tuple[MiddlewareUnit, ...]:
        return self._pipeline.units

    @property
    def listener(self) -> Listener:
        return self._listener

    @property
    def app(self) -> FastAPI:
        """The ASGI application, usable in-process without :meth:`start`."""
        return self._listener.app

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def start(self) -> None:
        if self._disposed:
            raise RuntimeError(_DISPOSED_MESSAGE)
        await self._listener.start()

    async def stop(self) -> None:
        self.log.info("[Server] Web server is stopping...")
        await self._listener.stop()

        self.log.info("[Server] Disposing middleware...")
        # units may block on their own threads or on this loop
        await asyncio.to_thread(self._pipeline.dispose)

        self.log.info("[Server] Goodbye!")
        self._disposed = True

    async def wait_closed(self) -> None:
        await self._listener.wait_closed()

    async def _dispatch(self, connection: Connection) -> ProcessResult:
        if self._disposed:
            raise RuntimeError(_DISPOSED_MESSAGE)
        return await self._pipeline.dispatch(connection)

    def _listener_started(self) -> None:
        self.log.info("[Server] Hello! %s is up and running :)", SERVER_NAME)

    def _listener_failed(self, exc: BaseException) -> None:
        self.log.critical("[Server] Listener failed: %s", exc, exc_info=exc)
