#!/usr/bin/env python3
"""
End-to-end gateway tests: the FastAPI app is driven through
httpx.ASGITransport and the upstream is an httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest
import yaml

from chat_relay.config import Configuration
from chat_relay.gateway import GatewayState, RelaySession, create_app
from chat_relay.llm.client import UpstreamClient
from chat_relay.llm.models import UpstreamConfig

HI_STREAM = (
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
    b"data: [DONE]\n\n"
)
MESSAGES = [{"role": "user", "content": "Hello"}]


def write_config(tmp_path, **gateway_overrides) -> str:
    config = {
        "upstream": {
            "base_url": "https://upstream.test/api/v1",
            "default_model": "openai/gpt-4o",
            "app_title": "Relay Tests",
            "api_key_env": "RELAY_TEST_API_KEY",
            "timeouts": {"connect": 5.0, "read": 5.0, "write": 5.0, "pool": 5.0},
        },
        "gateway": {
            "path": "/api/chat",
            "require_streaming": True,
            "cors_enabled": True,
            "cors_origin": "*",
            "relay_timeout": None,
            "host": "127.0.0.1",
            "port": 8000,
            **gateway_overrides,
        },
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return str(path)


class UpstreamRecorder:
    """Mock upstream handler that records every request it receives."""

    def __init__(self, respond):
        self.respond = respond
        self.requests: list[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        result = self.respond(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result


def sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=body
    )


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setenv("RELAY_TEST_API_KEY", "sk-test")
    return "sk-test"


def build(tmp_path, upstream: UpstreamRecorder, **gateway_overrides) -> httpx.AsyncClient:
    configuration = Configuration(write_config(tmp_path, **gateway_overrides))
    upstream_client = UpstreamClient(
        UpstreamConfig.from_dict(configuration.get_upstream_config()),
        api_key_provider=lambda: configuration.llm_api_key,
        transport=httpx.MockTransport(upstream),
    )
    app = create_app(configuration, upstream_client)
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://relay.test"
    )


def parse_events(body: str) -> list[dict]:
    events = []
    for block in body.split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: ")
        events.append(json.loads(block[len("data: "):]))
    return events


class TestStreaming:

    @pytest.mark.asyncio
    async def test_hi_then_done(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.headers["connection"] == "keep-alive"
        assert response.headers["access-control-allow-origin"] == "*"
        assert parse_events(response.text) == [{"delta": "Hi"}, {"done": True}]

    @pytest.mark.asyncio
    async def test_forwards_conversation_in_order_with_streaming(self, tmp_path, api_key):
        conversation = [
            {"role": "system", "content": "You are terse."},
            {"role": "user", "content": "One"},
            {"role": "assistant", "content": "Two"},
            {"role": "user", "content": "Three"},
        ]
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            await client.post(
                "/api/chat",
                json={"messages": conversation, "model": "meta/llama", "stream": False},
            )

        assert upstream.requests == [
            {"model": "meta/llama", "messages": conversation, "stream": True}
        ]

    @pytest.mark.asyncio
    async def test_default_model_when_absent(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            await client.post("/api/chat", json={"messages": MESSAGES})

        assert upstream.requests[0]["model"] == "openai/gpt-4o"

    @pytest.mark.asyncio
    async def test_upstream_drop_mid_stream(self, tmp_path, api_key):
        class DroppingStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
                raise httpx.ReadError("connection reset by peer")

        upstream = UpstreamRecorder(
            lambda request: httpx.Response(200, stream=DroppingStream())
        )
        async with build(tmp_path, upstream) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 200
        events = parse_events(response.text)
        assert events[0] == {"delta": "Hel"}
        assert len(events) == 2
        assert "connection reset by peer" in events[1]["error"]

    @pytest.mark.asyncio
    async def test_relay_deadline_during_streaming(self, tmp_path, api_key):
        class StallingStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield b'data: {"choices":[{"delta":{"content":"a"}}]}\n\n'
                await asyncio.sleep(5)
                yield b"data: [DONE]\n\n"

        upstream = UpstreamRecorder(
            lambda request: httpx.Response(200, stream=StallingStream())
        )
        async with build(tmp_path, upstream, relay_timeout=0.2) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert parse_events(response.text) == [
            {"delta": "a"},
            {"error": "Relay deadline exceeded"},
        ]

    @pytest.mark.asyncio
    async def test_relay_deadline_before_streaming(self, tmp_path, api_key):
        async def slow(request):
            await asyncio.sleep(5)
            return sse_response(HI_STREAM)

        upstream = UpstreamRecorder(slow)
        async with build(tmp_path, upstream, relay_timeout=0.1) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 504
        assert response.json()["category"] == "timeout_error"


class TestPreStreamFailures:

    @pytest.mark.asyncio
    async def test_upstream_401_is_mirrored(self, tmp_path, api_key):
        error_body = '{"error":{"message":"User not found.","code":401}}'
        upstream = UpstreamRecorder(
            lambda request: httpx.Response(
                401, headers={"content-type": "application/json"}, text=error_body
            )
        )
        async with build(tmp_path, upstream) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 401
        assert response.headers["content-type"] == "application/json"
        assert response.text == error_body
        assert "data:" not in response.text

    @pytest.mark.asyncio
    async def test_messages_not_a_sequence(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post(
                "/api/chat", json={"messages": {"role": "user", "content": "hi"}}
            )

        assert response.status_code == 400
        assert response.json()["category"] == "validation_error"
        assert upstream.requests == []

    @pytest.mark.parametrize("body", [
        {},
        {"messages": [{"role": "robot", "content": "beep"}]},
        {"messages": [{"role": "user"}]},
        {"messages": [{"role": "user", "content": 42}]},
        {"messages": ["hello"]},
        {"messages": MESSAGES, "model": ""},
    ])
    @pytest.mark.asyncio
    async def test_malformed_bodies_rejected(self, tmp_path, api_key, body):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post("/api/chat", json=body)

        assert response.status_code == 400
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unparseable_json_is_rejected(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post(
                "/api/chat", content=b"{nope", headers={"content-type": "application/json"}
            )

        assert response.status_code == 400
        assert response.json()["error"] == "messages[] required"

    @pytest.mark.asyncio
    async def test_deeply_nested_json_is_rejected(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post(
                "/api/chat",
                content=b"[" * 100000,
                headers={"content-type": "application/json"},
            )

        assert response.status_code == 400
        assert response.json()["error"] == "messages[] required"
        assert response.headers["access-control-allow-origin"] == "*"
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_missing_credential_is_500(self, tmp_path, monkeypatch):
        monkeypatch.delenv("RELAY_TEST_API_KEY", raising=False)
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 500
        assert response.json() == {
            "error": "Missing RELAY_TEST_API_KEY",
            "category": "configuration_error",
        }
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_malformed_credential_is_500(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_API_KEY", "sk test with spaces")
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 500
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unreachable_upstream_is_502(self, tmp_path, api_key):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with build(tmp_path, unreachable) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 502
        assert response.json()["category"] == "transport_error"


class TestMethodsAndCors:

    @pytest.mark.asyncio
    async def test_preflight(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.options("/api/chat")

        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["access-control-allow-methods"] == "POST, OPTIONS"
        assert response.headers["access-control-allow-headers"] == "content-type"

    @pytest.mark.asyncio
    async def test_get_is_method_not_allowed(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.get("/api/chat")

        assert response.status_code == 405
        assert response.text == "POST only"
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_cors_disabled(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream, cors_enabled=False) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers

    @pytest.mark.asyncio
    async def test_health(self, tmp_path, api_key):
        upstream = UpstreamRecorder(lambda request: sse_response(HI_STREAM))
        async with build(tmp_path, upstream) as client:
            response = await client.get("/health")

        assert response.json() == {"status": "ok"}


class TestNonStreamingMode:

    @pytest.mark.asyncio
    async def test_returns_text(self, tmp_path, api_key):
        upstream = UpstreamRecorder(
            lambda request: httpx.Response(
                200, json={"choices": [{"message": {"content": "Hi!"}}]}
            )
        )
        async with build(tmp_path, upstream, require_streaming=False) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 200
        assert response.json() == {"text": "Hi!"}
        assert upstream.requests[0]["stream"] is False

    @pytest.mark.parametrize("body", [{}, {"messages": None}], ids=["absent", "null"])
    @pytest.mark.asyncio
    async def test_default_prompt_when_messages_missing(self, tmp_path, api_key, body):
        upstream = UpstreamRecorder(
            lambda request: httpx.Response(200, json={"choices": []})
        )
        async with build(tmp_path, upstream, require_streaming=False) as client:
            response = await client.post("/api/chat", json=body)

        assert response.json() == {"text": ""}
        assert upstream.requests[0]["messages"] == [
            {"role": "user", "content": "Say hi!"}
        ]

    @pytest.mark.asyncio
    async def test_empty_messages_forwarded_as_is(self, tmp_path, api_key):
        upstream = UpstreamRecorder(
            lambda request: httpx.Response(200, json={"choices": []})
        )
        async with build(tmp_path, upstream, require_streaming=False) as client:
            await client.post("/api/chat", json={"messages": []})

        assert upstream.requests[0]["messages"] == []

    @pytest.mark.asyncio
    async def test_upstream_failure_is_502(self, tmp_path, api_key):
        upstream = UpstreamRecorder(
            lambda request: httpx.Response(401, text="bad key")
        )
        async with build(tmp_path, upstream, require_streaming=False) as client:
            response = await client.post("/api/chat", json={"messages": MESSAGES})

        assert response.status_code == 502
        assert response.json() == {"upstreamStatus": 401, "upstreamBody": "bad key"}


class FakeUpstream:
    """Byte source that counts how often it is released."""

    def __init__(self, chunks, fail_with: Exception | None = None):
        self.chunks = chunks
        self.fail_with = fail_with
        self.close_calls = 0
        self.pulled = 0

    async def aiter_bytes(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self):
        self.close_calls += 1


class TestRelaySession:

    @pytest.mark.asyncio
    async def test_normal_completion_closes_once(self):
        upstream = FakeUpstream([HI_STREAM])
        session = RelaySession()
        session.attach(upstream)

        body = b"".join([chunk async for chunk in session.stream()])

        assert parse_events(body.decode()) == [{"delta": "Hi"}, {"done": True}]
        assert session.state is GatewayState.CLOSED
        assert upstream.close_calls == 1
        assert session.close_count == 1
        assert session.translator.stats["deltas"] == 1
        assert session.translator.stats["frames"] == 2

    @pytest.mark.asyncio
    async def test_transport_failure_closes_once(self):
        upstream = FakeUpstream(
            [b'data: {"choices":[{"delta":{"content":"x"}}]}\n\n'],
            fail_with=ConnectionResetError("reset"),
        )
        session = RelaySession()
        session.attach(upstream)

        body = b"".join([chunk async for chunk in session.stream()])

        assert parse_events(body.decode()) == [{"delta": "x"}, {"error": "reset"}]
        assert session.state is GatewayState.ERRORED
        assert upstream.close_calls == 1

    @pytest.mark.asyncio
    async def test_double_close_is_noop(self):
        upstream = FakeUpstream([])
        session = RelaySession()
        session.attach(upstream)

        await session.close()
        await session.close()
        await session.close(GatewayState.ERRORED)

        assert upstream.close_calls == 1
        assert session.close_count == 1
        assert session.state is GatewayState.CLOSED

    @pytest.mark.asyncio
    async def test_client_disconnect_releases_upstream(self):
        upstream = FakeUpstream([
            b'data: {"choices":[{"delta":{"content":"a"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"b"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"c"}}]}\n\n',
            b"data: [DONE]\n\n",
        ])
        checks = 0

        async def disconnected() -> bool:
            nonlocal checks
            checks += 1
            return checks > 1

        session = RelaySession(disconnect_checker=disconnected)
        session.attach(upstream)

        body = b"".join([chunk async for chunk in session.stream()])

        assert parse_events(body.decode()) == [{"delta": "a"}]
        assert upstream.pulled == 1
        assert upstream.close_calls == 1
        assert session.state is GatewayState.ERRORED

    @pytest.mark.asyncio
    async def test_consumer_abort_releases_upstream(self):
        upstream = FakeUpstream([
            b'data: {"choices":[{"delta":{"content":"a"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"b"}}]}\n\n',
        ])
        session = RelaySession()
        session.attach(upstream)

        stream = session.stream()
        first = await anext(stream)
        await stream.aclose()

        assert first == b'data: {"delta": "a"}\n\n'
        assert upstream.close_calls == 1
        assert session.state is GatewayState.ERRORED

    @pytest.mark.asyncio
    async def test_encode_failure_becomes_error_event(self):
        upstream = FakeUpstream([
            b'data: {"choices":[{"delta":{"content":"\\ud800"}}]}\n\n',
            b"data: [DONE]\n\n",
        ])
        session = RelaySession()
        session.attach(upstream)

        body = b"".join([chunk async for chunk in session.stream()])

        events = parse_events(body.decode())
        assert len(events) == 1
        assert events[0]["error"].startswith("Frame encode error")
        assert upstream.close_calls == 1

    @pytest.mark.asyncio
    async def test_stream_requires_upstream(self):
        session = RelaySession()
        with pytest.raises(RuntimeError):
            await anext(session.stream())
