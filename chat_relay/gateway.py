"""
HTTP gateway for the streaming chat relay.

The gateway accepts a chat request from the browser, forwards it to the
completion API with streaming enabled and re-frames the upstream SSE
stream into ``{"delta"}``, ``{"done"}`` and ``{"error"}`` events.

Request lifecycle::

    Idle -> Validating -> Forwarding -> Streaming -> Closed
                 \\____________\\___________\\______-> Errored

Errors found before streaming starts become ordinary JSON error
responses. Once the 200 headers are out, errors are reported as a single
``error`` event and the stream is closed.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterable, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import ValidationError

from .config import Configuration
from .llm.client import UpstreamClient, UpstreamFailure, UpstreamStream
from .llm.exceptions import (
    FrameError,
    RelayError,
    RequestValidationError,
    UpstreamError,
)
from .llm.models import ChatRequest, UpstreamConfig
from .llm.streaming.models import DeltaEvent, DeltaEventType
from .llm.streaming.parser import SSEFrameReader
from .llm.streaming.translator import RelayTranslator
from .logging_utils import RelayErrorHandler, operation_context

logger = structlog.get_logger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
DEFAULT_MESSAGES = [{"role": "user", "content": "Say hi!"}]
DEADLINE_MESSAGE = "Relay deadline exceeded"

STREAM_HEADERS = {
    "cache-control": "no-cache, no-transform",
    "connection": "keep-alive",
}


class GatewayState(Enum):
    """Per-request gateway states."""
    IDLE = "idle"
    VALIDATING = "validating"
    FORWARDING = "forwarding"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({GatewayState.CLOSED, GatewayState.ERRORED})


@dataclass(frozen=True)
class GatewayConfig:
    """Options collapsing the handler variants into one gateway."""
    default_model: str
    require_streaming: bool = True
    cors_enabled: bool = True
    cors_origin: str = "*"
    relay_timeout: float | None = None

    @classmethod
    def from_dict(
        cls, gateway: dict[str, Any], upstream: dict[str, Any]
    ) -> GatewayConfig:
        return cls(
            default_model=upstream["default_model"],
            require_streaming=bool(gateway["require_streaming"]),
            cors_enabled=bool(gateway["cors_enabled"]),
            cors_origin=gateway["cors_origin"],
            relay_timeout=gateway["relay_timeout"],
        )


class ByteSource(Protocol):
    """What a relay session needs from an open upstream response."""

    def aiter_bytes(self) -> AsyncIterable[bytes]: ...

    async def aclose(self) -> None: ...


class RelaySession:
    """
    Live state of one in-flight relay.

    Owns the upstream byte source, the frame reader (and its line buffer)
    and the outbound event stream. ``close`` releases the upstream and is
    idempotent, whichever path reaches it first.
    """

    def __init__(
        self,
        request_id: str | None = None,
        deadline: float | None = None,
        disconnect_checker: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self.request_id = request_id or uuid.uuid4().hex[:8]
        self.deadline = deadline
        self.state = GatewayState.IDLE
        self.upstream: ByteSource | None = None
        self.translator = RelayTranslator()
        self.terminal: DeltaEventType | None = None
        self.close_count = 0
        self._disconnect_checker = disconnect_checker
        self._started = time.perf_counter()
        self._logger = logger.bind(request_id=self.request_id)

    @property
    def closed(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: GatewayState) -> None:
        if self.closed:
            return
        self._logger.debug(
            "Gateway state change", previous=self.state.value, state=state.value
        )
        self.state = state

    def attach(self, upstream: ByteSource) -> None:
        self.upstream = upstream

    async def close(self, state: GatewayState = GatewayState.CLOSED) -> None:
        """Close the session exactly once; later calls are no-ops."""
        if self.closed:
            return
        self.state = state
        self.close_count += 1
        try:
            if self.upstream is not None:
                await self.upstream.aclose()
        finally:
            self._logger.info(
                "Relay session closed",
                state=state.value,
                terminal=self.terminal.value if self.terminal else None,
                **self.translator.stats,
                duration_ms=round((time.perf_counter() - self._started) * 1000, 2),
            )

    async def _client_gone(self) -> bool:
        if self._disconnect_checker is None:
            return False
        return await self._disconnect_checker()

    @staticmethod
    def _encode(event: DeltaEvent) -> tuple[DeltaEvent, bytes]:
        try:
            return event, event.encode()
        except (TypeError, ValueError) as e:
            failure = FrameError(f"Frame encode error: {e}")
            error_event = DeltaEvent.error(RelayErrorHandler.stream_message(failure))
            return error_event, error_event.encode()

    async def stream(self) -> AsyncGenerator[bytes]:
        """Relay upstream frames to the client as encoded SSE events.

        Pulls one upstream frame at a time, so upstream reads never run
        ahead of what the client has accepted.
        """
        if self.upstream is None:
            raise RuntimeError("RelaySession.stream() requires an attached upstream")

        frames = SSEFrameReader(self.upstream.aiter_bytes()).frames()
        events = self.translator.translate(frames)
        self.transition(GatewayState.STREAMING)
        final_state = GatewayState.CLOSED

        try:
            while True:
                if await self._client_gone():
                    self._logger.info("Client disconnected, releasing upstream")
                    final_state = GatewayState.ERRORED
                    return

                try:
                    async with asyncio.timeout_at(self.deadline):
                        event = await anext(events)
                except StopAsyncIteration:
                    return
                except TimeoutError:
                    event = DeltaEvent.error(DEADLINE_MESSAGE)

                event, data = self._encode(event)
                yield data

                if event.is_terminal:
                    self.terminal = event.event_type
                    if event.event_type is DeltaEventType.ERROR:
                        final_state = GatewayState.ERRORED
                    return
        except BaseException:
            final_state = GatewayState.ERRORED
            raise
        finally:
            try:
                await events.aclose()
                await frames.aclose()
            finally:
                await self.close(final_state)


class GatewayHandler:
    """Single entry point for chat relay requests."""

    def __init__(self, config: GatewayConfig, upstream: UpstreamClient) -> None:
        self.config = config
        self.upstream = upstream

    def _cors_headers(self) -> dict[str, str]:
        if not self.config.cors_enabled:
            return {}
        return {
            "access-control-allow-origin": self.config.cors_origin,
            "access-control-allow-methods": "POST, OPTIONS",
            "access-control-allow-headers": "content-type",
        }

    def _deadline(self) -> float | None:
        if self.config.relay_timeout is None:
            return None
        return asyncio.get_running_loop().time() + self.config.relay_timeout

    async def _error_response(
        self, session: RelaySession, error: Exception, operation: str
    ) -> Response:
        status_code, body = RelayErrorHandler.error_body(
            error, operation, {"request_id": session.request_id}
        )
        await session.close(GatewayState.ERRORED)
        if isinstance(body, str):
            return Response(
                content=body,
                status_code=status_code,
                media_type="application/json",
                headers=self._cors_headers(),
            )
        return JSONResponse(body, status_code=status_code, headers=self._cors_headers())

    @staticmethod
    async def _parse_body(request: Request) -> ChatRequest:
        raw = await request.body()
        try:
            data = json.loads(raw) if raw else {}
        except (ValueError, RecursionError):
            data = {}

        if not isinstance(data, dict):
            raise RequestValidationError("Request body must be a JSON object")

        try:
            return ChatRequest.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise RequestValidationError(
                f"Invalid request body at '{location}': {first['msg']}"
            ) from e

    async def handle(self, request: Request) -> Response:
        """Answer one inbound request."""
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=self._cors_headers())

        session = RelaySession(
            deadline=self._deadline(),
            disconnect_checker=request.is_disconnected,
        )
        session.transition(GatewayState.VALIDATING)

        if request.method != "POST":
            await session.close(GatewayState.ERRORED)
            return PlainTextResponse(
                "POST only", status_code=405, headers=self._cors_headers()
            )

        try:
            self.upstream.credential()
            chat_request = await self._parse_body(request)
        except RelayError as e:
            return await self._error_response(session, e, "gateway.validate")

        model = chat_request.model or self.config.default_model

        if not self.config.require_streaming:
            return await self._complete(session, chat_request, model)

        if chat_request.messages is None:
            return await self._error_response(
                session,
                RequestValidationError("messages[] required"),
                "gateway.validate",
            )

        session.transition(GatewayState.FORWARDING)
        logger.info(
            "Forwarding chat request",
            request_id=session.request_id,
            model=model,
            messages=len(chat_request.messages),
        )

        try:
            async with asyncio.timeout_at(session.deadline):
                result = await self.upstream.open_stream(
                    chat_request.conversation(), model, stream=True
                )
        except (RelayError, TimeoutError) as e:
            return await self._error_response(session, e, "gateway.forward")

        if isinstance(result, UpstreamFailure):
            error = UpstreamError(
                f"Upstream returned {result.status_code}",
                status_code=result.status_code,
                body=result.body,
            )
            return await self._error_response(session, error, "gateway.forward")

        return self._stream_response(session, result)

    def _stream_response(
        self, session: RelaySession, upstream: UpstreamStream
    ) -> StreamingResponse:
        session.attach(upstream)
        return StreamingResponse(
            session.stream(),
            status_code=200,
            media_type="text/event-stream",
            headers={**STREAM_HEADERS, **self._cors_headers()},
        )

    async def _complete(
        self, session: RelaySession, chat_request: ChatRequest, model: str
    ) -> Response:
        """Non-streaming variant answering ``{"text": ...}`` in one response."""
        messages = (
            chat_request.conversation()
            if chat_request.messages is not None
            else DEFAULT_MESSAGES
        )
        session.transition(GatewayState.FORWARDING)

        try:
            async with (
                operation_context(
                    "gateway.complete",
                    context={"request_id": session.request_id, "model": model},
                ),
                asyncio.timeout_at(session.deadline),
            ):
                result = await self.upstream.complete(messages, model)
        except (RelayError, TimeoutError) as e:
            return await self._error_response(session, e, "gateway.complete")

        await session.close()
        if isinstance(result, UpstreamFailure):
            return JSONResponse(
                {"upstreamStatus": result.status_code, "upstreamBody": result.body},
                status_code=502,
                headers=self._cors_headers(),
            )
        return JSONResponse({"text": result}, headers=self._cors_headers())


def create_app(
    configuration: Configuration | None = None,
    upstream_client: UpstreamClient | None = None,
) -> FastAPI:
    """Build the FastAPI application hosting the gateway."""
    configuration = configuration or Configuration()
    upstream_config = configuration.get_upstream_config()
    gateway_config = configuration.get_gateway_config()

    if upstream_client is None:
        upstream_client = UpstreamClient(
            UpstreamConfig.from_dict(upstream_config),
            api_key_provider=lambda: configuration.llm_api_key,
        )

    handler = GatewayHandler(
        GatewayConfig.from_dict(gateway_config, upstream_config),
        upstream_client,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await upstream_client.aclose()
            logger.info("Upstream client closed")

    app = FastAPI(title="chat-relay", lifespan=lifespan)
    app.add_api_route(
        gateway_config["path"], handler.handle, methods=ALL_METHODS
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
