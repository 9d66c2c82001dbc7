"""Dispatch pipeline — walks the middleware units for one connection.

Units run strictly in registration order. A unit only processes the
connection when it accepts it, and the first non-``CONTINUE`` result ends
the walk. When no unit writes a response the sink's 404 default applies.
"""

from __future__ import annotations

import logging
from typing import Iterable

from scriptserve.errors import ErrorCode, error_response
from scriptserve.pipeline.connection import Connection
from scriptserve.pipeline.middleware import MiddlewareUnit, ProcessResult
from scriptserve.telemetry import get_tracer

logger = logging.getLogger(__name__)


class DispatchPipeline:
    """Ordered list of middleware units sharing one logger."""

    def __init__(self, units: Iterable[MiddlewareUnit], log: logging.Logger | None = None) -> None:
        self._units: list[MiddlewareUnit] = list(units)
        self.log = log or logger
        self._disposed = False
        for unit in self._units:
            unit.bind_logger(self.log)

    @property
    def units(self) -> tuple[MiddlewareUnit, ...]:
        return tuple(self._units)

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def dispatch(self, connection: Connection) -> ProcessResult:
        """Run *connection* through the units and return the final result.

        A unit that raises is logged and ends the walk with
        ``STOP_WITH_ERROR``; if it had not written a response yet the
        client gets a bare 500.
        """
        tracer = get_tracer()
        with tracer.start_as_current_span(
            "pipeline.dispatch",
            attributes={
                "http.method": connection.request.http_method,
                "http.target": connection.request.raw_url,
            },
        ) as span:
            for unit in self._units:
                try:
                    if not unit.accept_request(connection):
                        continue
                    result = await unit.process_request(connection)
                except Exception as exc:
                    self.log.error("[Pipeline] Unit %s failed: %s", unit.name, exc, exc_info=True)
                    if not connection.response.written:
                        connection.response.write(error_response(ErrorCode.E_INTERNAL))
                    result = ProcessResult.STOP_WITH_ERROR

                if result.stops:
                    span.set_attribute("pipeline.unit", unit.name)
                    span.set_attribute("pipeline.result", result.value)
                    return result
            return ProcessResult.CONTINUE

    def dispose(self) -> None:
        """Dispose every unit once, in registration order."""
        if self._disposed:
            return
        self._disposed = True
        for unit in self._units:
            try:
                unit.dispose()
            except Exception as exc:
                self.log.error("[Pipeline] Failed to dispose %s: %s", unit.name, exc)
