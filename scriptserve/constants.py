"""Centralized constants for scriptserve.

Defaults and protocol values live here so config, units and tests agree.
"""

# Server identity
SERVER_NAME: str = "scriptserve"
POWERED_BY_HEADER: str = "X-Powered-By"

# Listener defaults
DEFAULT_PREFIX: str = "http://localhost:8080/"
WILDCARD_HOSTS: frozenset[str] = frozenset({"+", "*"})
ANY_HOST: str = "0.0.0.0"

# Site layout defaults (relative to the site root)
DEFAULT_SITE_DIR: str = "wwwroot"
DEFAULT_SERVER_DIR: str = "server"
DEFAULT_ASSET_DIR: str = "assets"

# Script bridge defaults
DEFAULT_SCRIPT: str = "index.lua"
DEFAULT_WEBSOCKET_SCRIPT: str = "websocket.lua"
SCRIPT_EXTENSIONS: tuple[str, ...] = (".lua",)
MAX_SOURCE_CONTEXT: int = 2**53  # counter wraps back to 1 past this value

# Response defaults
DEFAULT_STATUS_CODE: int = 200
DEFAULT_MIME_TYPE: str = "application/octet-stream"
STREAM_CHUNK_SIZE: int = 16 * 1024  # 16 KiB per body chunk

# Static file handler
INDEX_FILES: tuple[str, ...] = ("index.html", "index.htm", "Default.html", "default.htm")

# WebSocket close codes (RFC 6455)
WS_NORMAL_CLOSURE: int = 1000
WS_INTERNAL_ERROR: int = 1011
REGISTRY_CLOSE_REASON: str = "Closed by the session registry"

# Environment
ENV_PREFIX: str = "SCRIPTSERVE_"
