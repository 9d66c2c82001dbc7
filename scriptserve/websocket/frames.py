"""Frame reassembly.

A :class:`FrameAccumulator` collects the fragments of one message at a
time. Its state says which kind of message is being collected, so a text
message can never be interleaved with a binary one.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from scriptserve.errors import SessionIOError


class FrameKind(enum.Enum):
    TEXT = "text"
    BINARY = "binary"
    CLOSE = "close"


@dataclass(frozen=True)
class Frame:
    kind: FrameKind
    payload: bytes = b""
    end_of_message: bool = True


@dataclass(frozen=True)
class Message:
    """A complete message; ``text`` is set (decoded once) for text messages."""

    kind: FrameKind
    data: bytes
    text: str | None = None


class AccumulatorState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING_TEXT = "accumulating_text"
    ACCUMULATING_BINARY = "accumulating_binary"


_STATE_FOR_KIND = {
    FrameKind.TEXT: AccumulatorState.ACCUMULATING_TEXT,
    FrameKind.BINARY: AccumulatorState.ACCUMULATING_BINARY,
}


class FrameAccumulator:
    """Per-session buffer turning frames into messages."""

    def __init__(self) -> None:
        self._state = AccumulatorState.IDLE
        self._buffer = bytearray()

    @property
    def state(self) -> AccumulatorState:
        return self._state

    @property
    def pending(self) -> int:
        """Bytes collected for the message in progress."""
        return len(self._buffer)

    def feed(self, frame: Frame) -> Message | None:
        """Add *frame*; return the finished message on its last fragment.

        Raises:
            SessionIOError: on a close frame, or a frame whose kind differs
                from the message currently being collected.
        """
        target = _STATE_FOR_KIND.get(frame.kind)
        if target is None:
            raise SessionIOError(f"{frame.kind.value} frame cannot be part of a message")
        if self._state is not AccumulatorState.IDLE and self._state is not target:
            raise SessionIOError(
                f"{frame.kind.value} frame received while {self._state.value}"
            )

        self._state = target
        self._buffer += frame.payload
        if not frame.end_of_message:
            return None

        data = bytes(self._buffer)
        self.reset()
        if frame.kind is FrameKind.TEXT:
            return Message(kind=FrameKind.TEXT, data=data, text=data.decode("utf-8", errors="replace"))
        return Message(kind=FrameKind.BINARY, data=data)

    def reset(self) -> None:
        self._state = AccumulatorState.IDLE
        self._buffer = bytearray()
