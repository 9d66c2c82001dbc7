"""Plain file serving for the asset directories.

A request belongs to this unit when the first segment of its path names
one of the asset directories (``/assets/...``). The rest of the path is
canonicalized and must stay inside that directory. Directories are served
through their index file.
"""

from __future__ import annotations

import asyncio
import mimetypes
import os
from pathlib import Path
from typing import Iterable, Mapping

from scriptserve.constants import DEFAULT_ASSET_DIR, DEFAULT_MIME_TYPE, INDEX_FILES
from scriptserve.errors import ErrorCode, error_response
from scriptserve.pipeline.connection import Connection, ResponseDescriptor
from scriptserve.pipeline.middleware import AcceptPredicate, MiddlewareUnit, ProcessResult
from scriptserve.utils import http_date, resolve_within


class StaticFileUnit(MiddlewareUnit):
    name = "static"

    def __init__(
        self,
        root_dir: str | os.PathLike[str],
        asset_dirs: Iterable[str] = (DEFAULT_ASSET_DIR,),
        mime_add: Mapping[str, str] | None = None,
        mime_remove: Iterable[str] = (),
        accept: AcceptPredicate | None = None,
    ) -> None:
        super().__init__(accept)
        if not str(root_dir):
            raise ValueError("root_dir is required")
        self._root = Path(root_dir)
        self._asset_dirs = {name.strip("/\\") for name in asset_dirs}
        self.index_files: list[str] = list(INDEX_FILES)

        self.mime_types: dict[str, str] = {
            ext.lower(): mime for ext, mime in mimetypes.MimeTypes().types_map[1].items()
        }
        for ext in mime_remove:
            self.mime_types.pop(ext.lower(), None)
        for ext, mime in (mime_add or {}).items():
            self.mime_types[ext.lower()] = mime

    @property
    def root(self) -> Path:
        return self._root

    def mime_type_for(self, path: Path) -> str:
        return self.mime_types.get(path.suffix.lower(), DEFAULT_MIME_TYPE)

    def default_accept(self, connection: Connection) -> bool:
        segment = connection.request.path.lstrip("/").split("/", 1)[0]
        return segment in self._asset_dirs

    async def process_request(self, connection: Connection) -> ProcessResult:
        if connection.request.is_websocket_request:
            return ProcessResult.CONTINUE
        self.log.debug("[Static-Req] %s", connection.request.raw_url)
        descriptor = await asyncio.to_thread(self.lookup, connection.request.path)
        connection.response.write(descriptor)
        return ProcessResult.STOP

    def lookup(self, path: str) -> ResponseDescriptor:
        """Resolve *path* to a file and open it, or describe a 404."""
        segment, _, rest = path.lstrip("/").partition("/")
        target = None
        if segment in self._asset_dirs:
            target = resolve_within(self._root / segment, rest)

        if target is not None and target.is_dir():
            for index in self.index_files:
                if (target / index).is_file():
                    target = target / index
                    break

        if target is None or not target.is_file():
            self.log.info("[Static-404] %s", path)
            return error_response(ErrorCode.E_NOT_FOUND)

        modified = target.stat().st_mtime
        self.log.info("[Static] %s", target)
        return ResponseDescriptor(
            status_code=200,
            mime_type=self.mime_type_for(target),
            headers={"Date": http_date(), "Last-Modified": http_date(modified)},
            body=target.open("rb"),
        )
