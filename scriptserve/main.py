"""Process entry point — settings → middleware units → running server.

Unit order:
  1. StaticFileUnit for the asset directories.
  2. WebSocketUnit (when enabled); text messages go to the WebSocket script.
  3. ScriptUnit for everything else (unless server scripts are disabled).
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from scriptserve.config import ServerSettings
from scriptserve.pipeline.middleware import MiddlewareUnit
from scriptserve.scripting.bridge import ScriptUnit
from scriptserve.server import WebServer
from scriptserve.static import StaticFileUnit
from scriptserve.telemetry import init_telemetry
from scriptserve.websocket.registry import SessionRegistry
from scriptserve.websocket.unit import WebSocketUnit

logger = logging.getLogger(__name__)


def build_units(settings: ServerSettings) -> list[MiddlewareUnit]:
    static = StaticFileUnit(
        settings.wwwroot,
        asset_dirs=settings.asset_dirs,
        mime_add=settings.mime_add,
        mime_remove=settings.mime_remove,
    )
    units: list[MiddlewareUnit] = [static]
    logger.debug("[Config] Static assets served from: %s", ", ".join(settings.asset_dirs))

    if settings.disable_server_script:
        logger.info("[Config] Server scripts disabled, serving static files only.")
        return units

    registry = SessionRegistry() if settings.websocket else None
    script = ScriptUnit(
        settings.script_root,
        registry=registry,
        transversal=settings.transversal,
        default_script=settings.default_script,
        extensions=settings.script_extensions,
        websocket_script=settings.websocket_script,
        accept=lambda conn: not static.accept_request(conn) and not conn.request.is_websocket_request,
    )
    if registry is not None:
        units.append(WebSocketUnit(registry, on_text=script.handle_websocket_text))
    units.append(script)
    return units


def create_server(settings: ServerSettings) -> WebServer:
    return WebServer(settings.prefixes, build_units(settings), log=logging.getLogger("scriptserve"))


async def serve(settings: ServerSettings) -> None:
    """Run the server until SIGINT/SIGTERM or a listener failure."""
    server = create_server(settings)
    await server.start()

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("[Main] Signal %s cannot be captured on this platform.", sig)

    waiters = {
        asyncio.create_task(stop_requested.wait()),
        asyncio.create_task(server.wait_closed()),
    }
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            task.cancel()
        await server.stop()


def main() -> None:
    load_dotenv()
    settings = ServerSettings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if settings.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        stream=sys.stderr,
    )
    init_telemetry(settings.otel_exporter)
    logger.info("[Main] Site root: %s", settings.wwwroot)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
