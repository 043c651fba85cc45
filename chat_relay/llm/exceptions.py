"""
Error taxonomy for relay operations.

Each error carries the HTTP status it maps to when it is detected before
the outbound stream starts. Once streaming has begun, status codes no
longer matter and every error degrades to a single ``error`` event.
"""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base relay error with HTTP mapping."""

    status_code: int = 500
    category: str = "relay_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.body = body


class ConfigurationError(RelayError):
    """Missing or malformed upstream credential."""

    status_code = 500
    category = "configuration_error"


class RequestValidationError(RelayError):
    """Inbound body does not carry a well-formed conversation."""

    status_code = 400
    category = "validation_error"


class UpstreamError(RelayError):
    """Non-2xx answer from the completion API.

    ``body`` holds the upstream payload verbatim.
    """

    category = "upstream_error"

    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(message, status_code=status_code, body=body)


class TransportError(RelayError):
    """Network failure reaching the upstream or stream interruption."""

    status_code = 502
    category = "transport_error"


class FrameError(RelayError):
    """Decode or encode failure while relaying frames."""

    status_code = 502
    category = "frame_error"
