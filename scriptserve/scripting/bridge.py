"""ScriptUnit — resolves a script for a request, runs it, builds the response.

File resolution, in order:
  1. Without transversal execution every request runs the default script.
  2. With it, the request path (leading ``/`` stripped) is used verbatim when
     it already ends in a script extension, otherwise each extension is
     appended in turn and the first existing file wins.
  3. A path that resolves to nothing falls back to the default script.
  4. A missing default script is a 404.

The script's return value may carry ``statusCode`` (default 200),
``mimeType`` (default ``application/octet-stream``), ``headers`` (default:
``Date`` and ``X-Powered-By``) and ``body`` (a string, sent as UTF-8).
Script errors and load failures answer 500 with no body.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from lupa import LuaError

from scriptserve.constants import (
    DEFAULT_MIME_TYPE,
    DEFAULT_SCRIPT,
    DEFAULT_STATUS_CODE,
    DEFAULT_WEBSOCKET_SCRIPT,
    POWERED_BY_HEADER,
    SCRIPT_EXTENSIONS,
    SERVER_NAME,
)
from scriptserve.errors import (
    ErrorCode,
    NotFoundError,
    ScriptLoadError,
    ScriptRuntimeError,
    ServerException,
    error_response,
)
from scriptserve.pipeline.connection import Connection, RequestInfo, ResponseDescriptor
from scriptserve.pipeline.middleware import AcceptPredicate, MiddlewareUnit, ProcessResult
from scriptserve.scripting.host import HostBindings, PageResult, ScriptHost
from scriptserve.scripting.runtime import ScriptRuntime
from scriptserve.telemetry import get_tracer
from scriptserve.utils import http_date, resolve_within
from scriptserve.websocket.registry import SessionRegistry


def default_headers() -> dict[str, str]:
    return {"Date": http_date(), POWERED_BY_HEADER: SERVER_NAME}


class ScriptUnit(MiddlewareUnit):
    name = "script"

    def __init__(
        self,
        root_dir: str | os.PathLike[str],
        registry: SessionRegistry | None = None,
        transversal: bool = False,
        default_script: str = DEFAULT_SCRIPT,
        extensions: Iterable[str] = SCRIPT_EXTENSIONS,
        websocket_script: str = DEFAULT_WEBSOCKET_SCRIPT,
        runtime: ScriptRuntime | None = None,
        accept: AcceptPredicate | None = None,
    ) -> None:
        super().__init__(accept)
        if not str(root_dir):
            raise ValueError("root_dir is required")
        self._root = Path(root_dir)
        self._registry = registry
        self._transversal = transversal
        self._default_script = default_script
        self._extensions = tuple(extensions)
        self._websocket_script = websocket_script
        self._runtime = runtime or ScriptRuntime()
        self._bindings = HostBindings(self._runtime, self._root, registry)
        self._host = ScriptHost(self._runtime, self._bindings, websocket=registry is not None)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def runtime(self) -> ScriptRuntime:
        return self._runtime

    def default_accept(self, connection: Connection) -> bool:
        return not connection.request.is_websocket_request

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_script(self, path: str) -> Path | None:
        """Return the script file serving *path*, or ``None`` for a 404."""
        if self._transversal:
            candidate = self._resolve_transversal(path.lstrip("/"))
            if candidate is not None:
                return candidate
        default = resolve_within(self._root, self._default_script)
        if default is not None and default.is_file():
            return default
        return None

    def _require_script(self, path: str) -> Path:
        script = self.resolve_script(path)
        if script is None:
            raise NotFoundError(f"no script serves {path}")
        return script

    def _resolve_transversal(self, name: str) -> Path | None:
        if not name:
            return None
        if name.lower().endswith(tuple(ext.lower() for ext in self._extensions)):
            names = [name]
        else:
            names = [name + ext for ext in self._extensions]
        for candidate_name in names:
            candidate = resolve_within(self._root, candidate_name)
            if candidate is not None and candidate.is_file():
                return candidate
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: RequestInfo) -> ResponseDescriptor:
        """Run the script for *request* and translate its result."""
        try:
            script = self._require_script(request.path)
        except NotFoundError as exc:
            self.log.warning("[Script-404] %s", request.raw_url)
            return error_response(exc.code)

        chunkname = script.relative_to(self._root.resolve()).as_posix()
        with get_tracer().start_as_current_span(
            "script.execute", attributes={"script.path": chunkname}
        ) as span:
            try:
                result = await self._runtime.call(
                    self._run_page, request.to_host_fields(), script, chunkname
                )
                descriptor = self._translate(result)
            except LuaError as exc:
                self.log.error("[Script] exception: %s", exc)
                span.set_attribute("script.error", ErrorCode.E_SCRIPT_RUNTIME.value)
                return error_response(ErrorCode.E_SCRIPT_RUNTIME)
            except ServerException as exc:
                self.log.error("[Script] %s: %s", exc.code.value, exc)
                span.set_attribute("script.error", exc.code.value)
                return error_response(exc.code)
            except Exception as exc:
                self.log.error("[Script] %s failed: %s", chunkname, exc, exc_info=True)
                span.set_attribute("script.error", ErrorCode.E_INTERNAL.value)
                return error_response(ErrorCode.E_INTERNAL)
            span.set_attribute("http.status_code", descriptor.status_code)
            return descriptor

    def _read_source(self, script: Path, name: str) -> tuple[str, str]:
        """Source of *script* and its chunk name, tagged with the run number."""
        try:
            source = script.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ScriptLoadError(f"cannot load script {script}: {exc}") from exc
        run = self._runtime.next_source_context()
        return source, f"{name}#{run}"

    def _run_page(self, fields: dict, script: Path, name: str) -> PageResult:
        source, chunkname = self._read_source(script, name)
        return self._host.run_page(fields, source, chunkname)

    def _translate(self, result: PageResult) -> ResponseDescriptor:
        status = DEFAULT_STATUS_CODE
        if result.status_code is not None:
            try:
                status = int(result.status_code)
            except (TypeError, ValueError) as exc:
                raise ScriptRuntimeError(f"invalid statusCode {result.status_code!r}") from exc
            if not 100 <= status <= 599:
                raise ScriptRuntimeError(f"statusCode {status} is out of range")

        if result.headers is None:
            headers = default_headers()
        else:
            headers = dict(result.headers)

        body = result.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        return ResponseDescriptor(
            status_code=status,
            mime_type=result.mime_type or DEFAULT_MIME_TYPE,
            headers=headers,
            body=body or b"",
        )

    async def handle_websocket_text(self, session_id: str, text: str) -> str | None:
        """Run the WebSocket script for one text message and return its reply.

        Errors propagate so the WebSocket unit tears the session down.
        """
        script = resolve_within(self._root, self._websocket_script)
        if script is None or not script.is_file():
            raise NotFoundError(f"websocket script {self._websocket_script} not found")
        try:
            return await self._runtime.call(self._run_message, session_id, text, script)
        except LuaError as exc:
            raise ScriptRuntimeError(str(exc)) from exc

    def _run_message(self, session_id: str, text: str, script: Path) -> str | None:
        source, chunkname = self._read_source(script, self._websocket_script)
        request = {"clientId": session_id, "text": text}
        return self._host.run_message(request, source, chunkname)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process_request(self, connection: Connection) -> ProcessResult:
        if connection.request.is_websocket_request:
            return ProcessResult.CONTINUE
        descriptor = await self.execute(connection.request)
        connection.response.write(descriptor)
        if descriptor.status_code >= 500:
            return ProcessResult.STOP_WITH_ERROR
        return ProcessResult.STOP

    def dispose(self) -> None:
        self._runtime.dispose()
        self._host.release()
