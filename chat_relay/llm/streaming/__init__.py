"""
Streaming relay pipeline.

- SSE parsing of the upstream byte stream
- Frame translation into normalized delta events
"""

from .models import DeltaEvent, DeltaEventType, FrameType, UpstreamFrame
from .parser import LineBuffer, SSEFrameReader
from .translator import RelayTranslator

__all__ = [
    "DeltaEvent",
    "DeltaEventType",
    "FrameType",
    "LineBuffer",
    "RelayTranslator",
    "SSEFrameReader",
    "UpstreamFrame",
]
