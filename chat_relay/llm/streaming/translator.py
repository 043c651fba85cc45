"""
Translation of upstream frames into normalized delta events.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterable
from typing import Any

import structlog

from ...logging_utils import RelayErrorHandler
from .models import DeltaEvent, UpstreamFrame

logger = structlog.get_logger(__name__)


class RelayTranslator:
    """
    Turns each upstream frame into zero or one ``DeltaEvent``.

    Frame handling:
    - terminal frame: one ``done`` event, translation stops
    - payload that is not valid JSON: dropped. Upstreams send partial or
      keep-alive payloads and these are not errors
    - JSON without a non-empty ``choices[0].delta.content``: dropped
    - otherwise: one ``delta`` event carrying the fragment untouched

    Any exception raised by the frame source ends the stream with a single
    ``error`` event instead of propagating.
    """

    def __init__(self) -> None:
        self.stats = {
            "frames": 0,
            "deltas": 0,
            "dropped_malformed": 0,
            "dropped_empty": 0,
        }

    @staticmethod
    def extract_content(data: Any) -> str:
        """Return the first choice's delta content, or '' if absent."""
        if not isinstance(data, dict):
            return ""
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        choice = choices[0]
        if not isinstance(choice, dict):
            return ""
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            return ""
        content = delta.get("content")
        return content if isinstance(content, str) else ""

    def translate_frame(self, frame: UpstreamFrame) -> DeltaEvent | None:
        """Translate one frame; None means nothing is emitted for it."""
        self.stats["frames"] += 1

        if frame.is_terminal:
            return DeltaEvent.done()

        try:
            data = json.loads(frame.payload)
        except (ValueError, RecursionError):
            # Malformed frame: intentional drop, not an error.
            self.stats["dropped_malformed"] += 1
            logger.debug("Dropped non-JSON frame", payload=frame.payload[:80])
            return None

        content = self.extract_content(data)
        if not content:
            self.stats["dropped_empty"] += 1
            return None

        self.stats["deltas"] += 1
        return DeltaEvent.delta(content)

    async def translate(
        self, frames: AsyncIterable[UpstreamFrame]
    ) -> AsyncGenerator[DeltaEvent]:
        """Yield events for a frame stream, ending with exactly one terminal."""
        try:
            async for frame in frames:
                event = self.translate_frame(frame)
                if event is None:
                    continue
                yield event
                if event.is_terminal:
                    return
        except Exception as e:
            logger.warning(
                "Upstream stream failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            yield DeltaEvent.error(RelayErrorHandler.stream_message(e))
            return

        # Upstream ended without the sentinel.
        yield DeltaEvent.done()
