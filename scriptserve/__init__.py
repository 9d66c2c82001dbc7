"""A small embeddable web server.

Connections flow through an ordered chain of middleware units: a static
file handler, a WebSocket session manager and a script handler that runs
server-side Lua scripts inside a sandboxed interpreter.
"""

__version__ = "0.1.0"
