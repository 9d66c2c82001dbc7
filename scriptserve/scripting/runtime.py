"""The single shared interpreter runtime.

One ``lupa.LuaRuntime`` is created per server and owned by a dedicated
single-thread executor. Every interaction with the interpreter (context
creation, script execution, native callbacks invoked by scripts) happens
on that thread, which serializes all script work; Lua states are not safe
for concurrent use. Async callers hop onto the thread with :meth:`call`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from lupa import LuaRuntime

from scriptserve.constants import MAX_SOURCE_CONTEXT

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScriptRuntime:
    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="script-runtime")
        self._counter_lock = threading.Lock()
        self._source_context = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._disposed = False
        lua = self._executor.submit(self._create).result()
        self._lua: LuaRuntime | None = lua
        logger.info("[ScriptRuntime] Lua runtime ready (%s).", lua.lua_implementation)

    @staticmethod
    def _create() -> LuaRuntime:
        return LuaRuntime(
            unpack_returned_tuples=True,
            register_eval=False,
            register_builtins=False,
        )

    @property
    def lua(self) -> LuaRuntime:
        if self._lua is None:
            raise RuntimeError("Script runtime has been disposed.")
        return self._lua

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        """Event loop of the most recent :meth:`call`, used for pushes from scripts."""
        return self._loop

    @property
    def source_context(self) -> int:
        return self._source_context

    @property
    def disposed(self) -> bool:
        return self._disposed

    def next_source_context(self) -> int:
        """Advance the per-run counter; wraps to 1 past ``MAX_SOURCE_CONTEXT``.

        The value is appended to chunk names (``index.lua#42``), so Lua error
        locations identify the run that raised them.
        """
        with self._counter_lock:
            self._source_context += 1
            if self._source_context > MAX_SOURCE_CONTEXT:
                self._source_context = 1
            return self._source_context

    def run_sync(self, func: Callable[..., T], *args: Any) -> T:
        """Run *func* on the runtime thread and block for its result."""
        if self._disposed:
            raise RuntimeError("Script runtime has been disposed.")
        return self._executor.submit(func, *args).result()

    async def call(self, func: Callable[..., T], *args: Any) -> T:
        """Run *func* on the runtime thread without blocking the event loop."""
        if self._disposed:
            raise RuntimeError("Script runtime has been disposed.")
        self._loop = asyncio.get_running_loop()
        return await self._loop.run_in_executor(self._executor, functools.partial(func, *args))

    def dispose(self) -> None:
        """Wait for queued script work, then drop the interpreter.

        Blocks until the runtime thread is idle; async callers should run it
        in a worker thread.
        """
        if self._disposed:
            return
        self._disposed = True
        self._executor.shutdown(wait=True)
        self._lua = None
        logger.info("[ScriptRuntime] Disposed after %d script runs.", self._source_context)
