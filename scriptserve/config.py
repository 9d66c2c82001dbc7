"""Settings for scriptserve, loaded from defaults and the environment.

Every option can be set through a ``SCRIPTSERVE_*`` environment variable
(``.env`` files are honoured by the entry point via python-dotenv):

    SCRIPTSERVE_WWWROOT                site root directory
    SCRIPTSERVE_PREFIXES               comma-separated listener prefixes
    SCRIPTSERVE_SERVER_DIR             script directory under the site root
    SCRIPTSERVE_ASSET_DIRS             comma-separated static directories
    SCRIPTSERVE_DISABLE_SERVER_SCRIPT  serve static files only
    SCRIPTSERVE_TRANSVERSAL            resolve scripts from the request path
    SCRIPTSERVE_WEBSOCKET              enable WebSocket sessions
    SCRIPTSERVE_MIME_ADD               ``.ext=type`` pairs, comma-separated
    SCRIPTSERVE_MIME_REMOVE            comma-separated extensions
    SCRIPTSERVE_VERBOSE                debug logging
    SCRIPTSERVE_DEFAULT_SCRIPT         fallback script name
    SCRIPTSERVE_WEBSOCKET_SCRIPT       script handling WebSocket text messages
    SCRIPTSERVE_SCRIPT_EXTENSIONS      recognised script extensions, in order
    SCRIPTSERVE_OTEL_EXPORTER          none | console | otlp
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator

from scriptserve.constants import (
    DEFAULT_ASSET_DIR,
    DEFAULT_PREFIX,
    DEFAULT_SCRIPT,
    DEFAULT_SERVER_DIR,
    DEFAULT_SITE_DIR,
    DEFAULT_WEBSOCKET_SCRIPT,
    ENV_PREFIX,
    SCRIPT_EXTENSIONS,
)

_LIST_FIELDS = ("prefixes", "asset_dirs", "mime_remove", "script_extensions")


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class ServerSettings(BaseModel):
    wwwroot: Path = Field(default_factory=lambda: Path.cwd() / DEFAULT_SITE_DIR)
    prefixes: list[str] = Field(default_factory=lambda: [DEFAULT_PREFIX])
    server_dir: str = DEFAULT_SERVER_DIR
    asset_dirs: list[str] = Field(default_factory=lambda: [DEFAULT_ASSET_DIR])
    disable_server_script: bool = False
    transversal: bool = False
    websocket: bool = True
    mime_add: dict[str, str] = Field(default_factory=dict)
    mime_remove: list[str] = Field(default_factory=list)
    verbose: bool = False
    default_script: str = DEFAULT_SCRIPT
    websocket_script: str = DEFAULT_WEBSOCKET_SCRIPT
    script_extensions: list[str] = Field(default_factory=lambda: list(SCRIPT_EXTENSIONS))
    otel_exporter: str = "none"

    @field_validator(*_LIST_FIELDS, mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _split(value)
        return value

    @field_validator("mime_add", mode="before")
    @classmethod
    def _parse_mime_pairs(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        pairs: dict[str, str] = {}
        for item in _split(value):
            ext, sep, mime = item.partition("=")
            if not sep or not ext.strip() or not mime.strip():
                raise ValueError(f"invalid MIME mapping {item!r}, expected '.ext=type'")
            pairs[ext.strip()] = mime.strip()
        return pairs

    @field_validator("asset_dirs")
    @classmethod
    def _strip_asset_dirs(cls, value: list[str]) -> list[str]:
        return [item.strip("/\\") for item in value]

    @field_validator("otel_exporter")
    @classmethod
    def _check_exporter(cls, value: str) -> str:
        value = value.lower()
        if value not in {"none", "console", "otlp"}:
            raise ValueError(f"unknown exporter {value!r}")
        return value

    @model_validator(mode="after")
    def _check_layout(self) -> "ServerSettings":
        if not self.prefixes:
            raise ValueError("at least one listener prefix is required")
        for ext in self.script_extensions:
            if not ext.startswith("."):
                raise ValueError(f"script extension {ext!r} must start with '.'")
        server_dir = self.server_dir.strip("/\\")
        if any(asset.lower() == server_dir.lower() for asset in self.asset_dirs):
            raise ValueError("asset directory cannot be the same as the server script directory")
        return self

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def script_root(self) -> Path:
        return self.wwwroot / self.server_dir

    @property
    def asset_roots(self) -> list[Path]:
        return [self.wwwroot / asset for asset in self.asset_dirs]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerSettings":
        """Build settings from ``SCRIPTSERVE_*`` variables (default: ``os.environ``)."""
        source = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = source.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)
