"""
HTTP client for the upstream completion API.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from ..logging_utils import log_operation
from .exceptions import TransportError
from .models import UpstreamConfig

logger = structlog.get_logger(__name__)

COMPLETIONS_PATH = "/chat/completions"


@dataclass(frozen=True)
class UpstreamFailure:
    """Non-2xx upstream answer with its body read in full."""
    status_code: int
    body: str
    content_type: str = "application/json"


@dataclass
class UpstreamStream:
    """Open 2xx upstream response exposing its raw byte stream."""
    status_code: int
    content_type: str
    response: httpx.Response
    _closed: bool = field(default=False, init=False)

    @property
    def closed(self) -> bool:
        return self._closed

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        except httpx.TransportError as e:
            raise TransportError(f"Upstream stream interrupted: {e}") from e

    async def aclose(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()


class UpstreamClient:
    """Streaming client for an OpenAI-compatible completion endpoint."""

    def __init__(
        self,
        config: UpstreamConfig,
        api_key_provider: Callable[[], str],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._api_key_provider = api_key_provider
        self.client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=config.base_url,
            headers={"X-Title": config.app_title},
            timeout=httpx.Timeout(
                connect=config.connect_timeout,
                read=config.read_timeout,
                write=config.write_timeout,
                pool=config.pool_timeout,
            ),
            transport=transport,
        )

    def credential(self) -> str:
        """Current API key; raises ConfigurationError when unusable."""
        return self._api_key_provider()

    def _build_request(
        self, messages: list[dict[str, Any]], model: str, stream: bool
    ) -> httpx.Request:
        payload = {"model": model, "messages": messages, "stream": stream}
        return self.client.build_request(
            "POST",
            COMPLETIONS_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {self.credential()}"},
        )

    @log_operation("upstream.open_stream")
    async def open_stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        stream: bool = True,
    ) -> UpstreamStream | UpstreamFailure:
        """
        Send the completion request and return the open response.

        Args:
            messages: Conversation in turn order
            model: Model identifier, defaults to the configured model
            stream: Streaming flag sent to the upstream

        Returns:
            UpstreamStream on 2xx, UpstreamFailure otherwise

        Raises:
            ConfigurationError: If the credential is missing or malformed
            TransportError: If the upstream cannot be reached
        """
        request = self._build_request(
            messages, model or self.config.default_model, stream
        )

        try:
            response = await self.client.send(request, stream=True)
        except httpx.TransportError as e:
            logger.error("Upstream unreachable", error=str(e))
            raise TransportError(f"Upstream unreachable: {e}") from e

        content_type = response.headers.get("content-type", "application/json")

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.TransportError as e:
                raise TransportError(f"Upstream error body unreadable: {e}") from e
            finally:
                await response.aclose()
            logger.warning(
                "Upstream returned error",
                status_code=response.status_code,
                body=body[:300],
            )
            return UpstreamFailure(response.status_code, body, content_type)

        return UpstreamStream(response.status_code, content_type, response)

    @log_operation("upstream.complete")
    async def complete(
        self, messages: list[dict[str, Any]], model: str | None = None
    ) -> str | UpstreamFailure:
        """Non-streaming completion returning the first choice's content."""
        result = await self.open_stream(messages, model, stream=False)
        if isinstance(result, UpstreamFailure):
            return result

        try:
            raw = await result.response.aread()
        except httpx.TransportError as e:
            raise TransportError(f"Upstream response unreadable: {e}") from e
        finally:
            await result.aclose()

        try:
            data = result.response.json() if raw else {}
        except ValueError:
            data = {}

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = ""
        return content if isinstance(content, str) else ""

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> UpstreamClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
