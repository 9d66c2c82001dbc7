"""Middleware unit abstraction.

A unit exposes an accept check, an async processing step and a dispose
hook. Processing returns a :class:`ProcessResult` telling the dispatcher
whether the next unit should see the connection.
"""

from __future__ import annotations

import abc
import enum
import logging
from typing import Callable

from scriptserve.pipeline.connection import Connection

AcceptPredicate = Callable[[Connection], bool]


class ProcessResult(enum.Enum):
    CONTINUE = "continue"
    STOP = "stop"
    STOP_WITH_ERROR = "stop_with_error"

    @property
    def stops(self) -> bool:
        return self is not ProcessResult.CONTINUE


class MiddlewareUnit(abc.ABC):
    """Base class for request handlers composed into the dispatch pipeline.

    Subclasses implement :meth:`process_request` and usually override
    :meth:`default_accept`. An *accept* predicate passed to the constructor
    replaces the default check. Accept checks must be side-effect free.
    """

    name: str = "unit"

    def __init__(self, accept: AcceptPredicate | None = None) -> None:
        self._accept = accept
        self.log = logging.getLogger(type(self).__module__)

    def bind_logger(self, logger: logging.Logger) -> None:
        """Route this unit's log records through *logger*."""
        self.log = logger.getChild(self.name)

    def default_accept(self, connection: Connection) -> bool:
        return True

    def accept_request(self, connection: Connection) -> bool:
        if self._accept is not None:
            return bool(self._accept(connection))
        return self.default_accept(connection)

    @abc.abstractmethod
    async def process_request(self, connection: Connection) -> ProcessResult:
        """Act on *connection*; may write its response sink at most once."""

    def dispose(self) -> None:
        return None
