"""Host object injection and result extraction.

The Lua side of the bridge is a small prelude, loaded once per runtime,
that builds sandboxed execution contexts. A context is a fresh global
environment holding copies of the safe standard libraries plus the
``host`` table: the request snapshot and the script-visible callbacks
(``echo``, ``runScript``, ``readFile``, ``writeFile`` and, with WebSocket
support, ``websocketClients``/``websocketPush``).

The Python side of those callbacks is a fixed table of bound methods of
:class:`HostBindings`, created when the host is installed and kept for the
runtime's whole lifetime. Contexts only hold Lua closures over that table.
Native callbacks report failures as an ``(ok, value)`` pair which the
prelude turns into a script-visible ``error``.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from scriptserve.scripting.runtime import ScriptRuntime
from scriptserve.utils import resolve_within
from scriptserve.websocket.registry import SessionRegistry

logger = logging.getLogger(__name__)


def _report_push(session_id: str, future: concurrent.futures.Future) -> None:
    if future.cancelled():
        logger.warning("[WebSocket] Push to %s was cancelled.", session_id)
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("[WebSocket] Push to %s failed: %s", session_id, exc)


PRELUDE = r"""
return function(native)
  local SAFE_GLOBALS = {
    "assert", "error", "ipairs", "next", "pairs", "pcall", "select",
    "tonumber", "tostring", "type", "xpcall", "rawequal", "rawget",
    "rawset", "rawlen", "setmetatable", "getmetatable", "unpack",
  }
  local LIBRARIES = { "string", "table", "math", "utf8", "coroutine" }

  -- scripts must not reach the shared string library through ("").x
  local string_meta = getmetatable("")
  if type(string_meta) == "table" then string_meta.__metatable = false end

  local function copy(source)
    local result = {}
    for k, v in pairs(source) do result[k] = v end
    return result
  end

  local function unwrap(ok, value)
    if not ok then error(value, 0) end
    return value
  end

  local function new_env()
    local env = {}
    for _, name in ipairs(SAFE_GLOBALS) do env[name] = _G[name] end
    for _, name in ipairs(LIBRARIES) do
      if _G[name] ~= nil then env[name] = copy(_G[name]) end
    end
    env.os = { time = os.time, clock = os.clock, date = os.date }
    env._G = env
    return env
  end

  local function run_chunk(env, source, chunkname)
    local chunk, err = load(source, "=" .. chunkname, "t", env)
    if not chunk then error(err, 0) end
    return chunk()
  end

  local function new_context(request, websocket)
    local env = new_env()
    local host = { request = request }

    host.echo = function(...)
      local parts = {}
      for i = 1, select("#", ...) do parts[i] = tostring((select(i, ...))) end
      native.echo(table.concat(parts, " "))
    end

    host.runScript = function(path)
      if path == nil then error("not enough arguments", 0) end
      local ok, source, chunkname = native.loadScript(tostring(path))
      return run_chunk(env, unwrap(ok, source), chunkname)
    end

    host.readFile = function(path)
      if path == nil then error("not enough arguments", 0) end
      return unwrap(native.readFile(tostring(path)))
    end

    host.writeFile = function(path, text)
      if path == nil or text == nil then error("not enough arguments", 0) end
      unwrap(native.writeFile(tostring(path), tostring(text)))
    end

    if websocket then
      host.websocketClients = function()
        return unwrap(native.websocketClients())
      end
      host.websocketPush = function(id, message)
        if id == nil or message == nil then error("not enough arguments", 0) end
        unwrap(native.websocketPush(tostring(id), tostring(message)))
      end
    end

    env.host = host
    return env
  end

  local function header_pairs(headers)
    local result = {}
    if #headers > 0 then
      for _, pair in ipairs(headers) do
        local name = pair.name or pair[1]
        local value = pair.value or pair[2]
        if name == nil or value == nil then error("header entries need a name and a value", 0) end
        result[#result + 1] = { tostring(name), tostring(value) }
      end
      return result
    end
    local names = {}
    for name in pairs(headers) do
      if type(name) == "string" then names[#names + 1] = name end
    end
    table.sort(names)
    for _, name in ipairs(names) do
      result[#result + 1] = { name, tostring(headers[name]) }
    end
    return result
  end

  local function describe(result)
    if type(result) ~= "table" then return false end
    local headers = nil
    if result.headers ~= nil then
      if type(result.headers) ~= "table" then error("headers must be a table", 0) end
      headers = header_pairs(result.headers)
    end
    local body = result.body
    if body ~= nil and type(body) ~= "string" then
      if type(body) == "number" or type(body) == "boolean" then
        body = tostring(body)
      else
        error("body must be a string", 0)
      end
    end
    local mime = result.mimeType
    if mime ~= nil then mime = tostring(mime) end
    return true, result.statusCode, mime, headers, body
  end

  local function run_page(env, source, chunkname)
    return describe((run_chunk(env, source, chunkname)))
  end

  local function run_message(env, source, chunkname)
    local reply = run_chunk(env, source, chunkname)
    if reply == nil then return nil end
    return tostring(reply)
  end

  return {
    new_context = new_context,
    run_page = run_page,
    run_message = run_message,
  }
end
"""


def to_lua(lua: Any, value: Any) -> Any:
    """Convert nested dicts and lists into Lua tables (lists become 1-based)."""
    if isinstance(value, Mapping):
        table = lua.table()
        for key, item in value.items():
            table[key] = to_lua(lua, item)
        return table
    if isinstance(value, (list, tuple)):
        table = lua.table()
        for index, item in enumerate(value, start=1):
            table[index] = to_lua(lua, item)
        return table
    return value


@dataclass(frozen=True)
class PageResult:
    """What a page script returned, before defaults are applied."""

    is_table: bool
    status_code: Any = None
    mime_type: str | None = None
    headers: list[tuple[str, str]] | None = None
    body: str | bytes | None = None


class HostBindings:
    """Native side of the host callbacks.

    Each method returns ``(True, value)`` on success or ``(False, message)``
    on failure. Paths are relative to the script root and may not leave it.
    """

    def __init__(
        self,
        runtime: ScriptRuntime,
        script_root: Path,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._runtime = runtime
        self._root = Path(script_root)
        self._registry = registry

    def _resolve(self, path: str) -> Path:
        target = resolve_within(self._root, path)
        if target is None:
            raise PermissionError(f"access denied: {path}")
        return target

    def echo(self, text: str) -> tuple[bool, None]:
        print(text, flush=True)
        return True, None

    def load_script(self, path: str) -> tuple[bool, str, str | None]:
        """Source of a library script and the chunk name it runs under."""
        try:
            source = self._resolve(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return False, f"cannot load script {path}: {exc}", None
        if not source.strip():
            return False, "invalid script", None
        run = self._runtime.next_source_context()
        return True, source, f"{path}#{run}"

    def read_file(self, path: str) -> tuple[bool, str]:
        try:
            with open(self._resolve(path), encoding="utf-8", newline="") as fh:
                return True, fh.read()
        except (OSError, UnicodeDecodeError) as exc:
            return False, str(exc)

    def write_file(self, path: str, text: str) -> tuple[bool, str | None]:
        try:
            with open(self._resolve(path), "w", encoding="utf-8", newline="") as fh:
                fh.write(text)
        except OSError as exc:
            return False, str(exc)
        return True, None

    def websocket_clients(self) -> tuple[bool, Any]:
        ids = self._registry.ids() if self._registry is not None else []
        return True, self._runtime.lua.table_from(ids)

    def websocket_push(self, session_id: str, message: str) -> tuple[bool, str | None]:
        loop = self._runtime.loop
        if self._registry is None or loop is None:
            return False, "websocket support is not enabled"
        future = asyncio.run_coroutine_threadsafe(self._registry.send_message(session_id, message), loop)
        future.add_done_callback(functools.partial(_report_push, session_id))
        return True, None

    def callbacks(self) -> dict[str, Any]:
        return {
            "echo": self.echo,
            "loadScript": self.load_script,
            "readFile": self.read_file,
            "writeFile": self.write_file,
            "websocketClients": self.websocket_clients,
            "websocketPush": self.websocket_push,
        }


class ScriptHost:
    """Installs the prelude into a runtime and runs scripts in fresh contexts.

    ``run_page``/``run_message`` must be called on the runtime thread (use
    ``runtime.call``).
    """

    def __init__(self, runtime: ScriptRuntime, bindings: HostBindings, websocket: bool = False) -> None:
        self._runtime = runtime
        self._bindings = bindings
        self._websocket = websocket
        self._native: Any = None
        self._api: Any = None
        runtime.run_sync(self._install)

    def _install(self) -> None:
        lua = self._runtime.lua
        factory = lua.execute(PRELUDE)
        self._native = lua.table_from(self._bindings.callbacks())
        self._api = factory(self._native)

    def _context(self, request: Mapping[str, Any]) -> Any:
        lua = self._runtime.lua
        return self._api["new_context"](to_lua(lua, request), self._websocket)

    def run_page(self, request: Mapping[str, Any], source: str, chunkname: str) -> PageResult:
        env = self._context(request)
        outcome = self._api["run_page"](env, source, chunkname)
        if not isinstance(outcome, tuple):
            outcome = (outcome,)
        if not outcome[0]:
            return PageResult(is_table=False)

        _, status, mime, headers, body = (outcome + (None,) * 5)[:5]
        pairs = None
        if headers is not None:
            pairs = [(headers[i][1], headers[i][2]) for i in range(1, len(headers) + 1)]
        return PageResult(is_table=True, status_code=status, mime_type=mime, headers=pairs, body=body)

    def run_message(self, request: Mapping[str, Any], source: str, chunkname: str) -> str | None:
        env = self._context(request)
        return self._api["run_message"](env, source, chunkname)

    def release(self) -> None:
        """Drop the prelude tables so the interpreter can be collected."""
        self._native = None
        self._api = None
