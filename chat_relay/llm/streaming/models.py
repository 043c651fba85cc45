"""
Streaming-specific dataclasses for the relay pipeline.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum

TERMINAL_SENTINEL = "[DONE]"


class FrameType(Enum):
    """Logical frames produced by the SSE reader."""
    PAYLOAD = "payload"
    TERMINAL = "terminal"


class DeltaEventType(Enum):
    """Normalized downstream event variants."""
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class UpstreamFrame:
    """One ``data:`` payload from the upstream, or the terminal marker."""
    frame_type: FrameType
    payload: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.frame_type is FrameType.TERMINAL


@dataclass(frozen=True)
class DeltaEvent:
    """Normalized event sent to the client."""
    event_type: DeltaEventType
    text: str = ""

    @classmethod
    def delta(cls, text: str) -> DeltaEvent:
        return cls(DeltaEventType.DELTA, text)

    @classmethod
    def done(cls) -> DeltaEvent:
        return cls(DeltaEventType.DONE)

    @classmethod
    def error(cls, message: str) -> DeltaEvent:
        return cls(DeltaEventType.ERROR, message)

    @property
    def is_terminal(self) -> bool:
        return self.event_type is not DeltaEventType.DELTA

    def to_dict(self) -> dict[str, str | bool]:
        if self.event_type is DeltaEventType.DELTA:
            return {"delta": self.text}
        if self.event_type is DeltaEventType.DONE:
            return {"done": True}
        return {"error": self.text}

    def encode(self) -> bytes:
        """Frame the event as a single SSE ``data:`` line plus blank line."""
        payload = json.dumps(self.to_dict(), ensure_ascii=False)
        return f"data: {payload}\n\n".encode("utf-8")
