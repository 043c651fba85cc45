"""
Incremental SSE parsing for upstream completion streams.

Raw bytes arrive in arbitrary chunks. ``LineBuffer`` turns them into
complete text lines and ``SSEFrameReader`` turns those lines into
``UpstreamFrame`` objects, so chunk boundaries never leak into the
frames that come out.
"""

from __future__ import annotations

import codecs
from collections.abc import AsyncGenerator, AsyncIterable

from ..exceptions import FrameError
from .models import TERMINAL_SENTINEL, FrameType, UpstreamFrame

DATA_PREFIX = "data:"
LINE_TERMINATOR = "\n"


class LineBuffer:
    """
    Owned text buffer that splits decoded bytes into complete lines.

    Invariant: after ``feed`` returns, ``pending`` holds at most one
    partial line (text after the last terminator). Every complete line
    is returned exactly once and removed from the buffer.
    """

    def __init__(self, encoding: str = "utf-8", errors: str = "replace"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors=errors)
        self._pending = ""

    @property
    def pending(self) -> str:
        """Trailing partial line carried over to the next feed."""
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """Decode a chunk and return the lines it completes."""
        try:
            text = self._decoder.decode(chunk)
        except UnicodeDecodeError as e:
            raise FrameError(f"Upstream stream decode error: {e}") from e
        return self._split(self._pending + text)

    def flush(self) -> list[str]:
        """Drain the decoder and return whatever is left as final lines."""
        try:
            text = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise FrameError(f"Upstream stream decode error: {e}") from e
        lines = self._split(self._pending + text)
        if self._pending:
            lines.append(self._pending)
            self._pending = ""
        return lines

    def _split(self, text: str) -> list[str]:
        *lines, self._pending = text.split(LINE_TERMINATOR)
        return lines


class SSEFrameReader:
    """Lazy reader turning an upstream byte stream into logical SSE frames.

    Only ``data:`` lines are understood. Comments, blank keep-alive
    lines and other SSE fields are skipped. Reading stops at the
    terminal sentinel, no further bytes are pulled from the source.
    """

    def __init__(self, source: AsyncIterable[bytes], errors: str = "replace"):
        self._source = source
        self._buffer = LineBuffer(errors=errors)
        self._consumed = False

    @staticmethod
    def parse_line(line: str) -> UpstreamFrame | None:
        """Parse one complete line, returning None for ignored lines."""
        stripped = line.strip()
        if not stripped.startswith(DATA_PREFIX):
            return None

        payload = stripped[len(DATA_PREFIX):].strip()
        if payload == TERMINAL_SENTINEL:
            return UpstreamFrame(FrameType.TERMINAL)
        return UpstreamFrame(FrameType.PAYLOAD, payload)

    async def frames(self) -> AsyncGenerator[UpstreamFrame]:
        """Yield frames in order until the source ends or the sentinel."""
        if self._consumed:
            raise RuntimeError("SSEFrameReader can only be consumed once")
        self._consumed = True

        async for chunk in self._source:
            if not chunk:
                continue
            for line in self._buffer.feed(chunk):
                frame = self.parse_line(line)
                if frame is None:
                    continue
                yield frame
                if frame.is_terminal:
                    return

        # Upstream closed; a last line without terminator is still complete.
        for line in self._buffer.flush():
            frame = self.parse_line(line)
            if frame is None:
                continue
            yield frame
            if frame.is_terminal:
                return
