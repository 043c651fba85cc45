"""
Upstream completion API integration.

This package provides:
- Inbound conversation models and upstream settings
- The relay error taxonomy
- The streaming client for the completion API (``llm.client``)
- The SSE relay pipeline (``llm.streaming``)
"""

from __future__ import annotations

from .exceptions import (
    ConfigurationError,
    FrameError,
    RelayError,
    RequestValidationError,
    TransportError,
    UpstreamError,
)
from .models import ChatMessage, ChatRequest, MessageRole, UpstreamConfig

__all__ = [
    # Models
    "ChatMessage",
    "ChatRequest",
    # Exceptions
    "ConfigurationError",
    "FrameError",
    "MessageRole",
    "RelayError",
    "RequestValidationError",
    "TransportError",
    "UpstreamConfig",
    "UpstreamError",
]
