"""WebSocket session handling: framing, session registry and the pipeline unit."""
