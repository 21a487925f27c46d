import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from ccbproxy.proxy.events import EventChannel
from ccbproxy.proxy.main import GATEWAY_VERSION, create_app, relay_stream
from ccbproxy.proxy.runtime import GatewayService
from ccbproxy.proxy.transformers.openai import OpenAITransformer
from ccbproxy.proxy.transformers.registry import TransformerRegistry
from ccbproxy.proxy.transformers.sse import SSEDecoder

MESSAGE = {
    "model": "claude-3-5-sonnet-20241022",
    "max_tokens": 64,
    "messages": [{"role": "user", "content": "Hello"}],
}


def openai_completion(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    prompt = body["messages"][-1]["content"]
    return httpx.Response(
        200,
        json={
            "id": "chatcmpl-1",
            "model": body["model"],
            "choices": [
                {"index": 0, "message": {"role": "assistant", "content": f"echo: {prompt}"}, "finish_reason": "stop"}
            ],
            "usage": {"prompt_tokens": 3, "completion_tokens": 2},
        },
    )


def openai_stream(request: httpx.Request) -> httpx.Response:
    chunks = [
        {"id": "chatcmpl-2", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"content": "Hi"}}]},
        {"id": "chatcmpl-2", "choices": [{"index": 0, "delta": {"content": " there"}, "finish_reason": "stop"}]},
    ]
    raw = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks) + "data: [DONE]\n\n"
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw.encode())


class Upstream:
    """Records every request a gateway sends upstream."""

    def __init__(self, handler=openai_completion):
        self.requests = []
        self._handler = handler

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)


def gateway(config, upstream=None, channel=None, transformers=None) -> TestClient:
    upstream = upstream or Upstream()
    service = GatewayService(config, transformers=transformers, channel=channel, transport=upstream.transport)
    return TestClient(create_app(service))


def frames(body: bytes):
    decoder = SSEDecoder()
    return decoder.feed(body) + decoder.close()


def test_health_reports_provider(make_provider, make_config):
    client = gateway(make_config(make_provider("openai", name="Team OpenAI")))
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["version"] == GATEWAY_VERSION
    assert body["currentProvider"] == "Team OpenAI"
    assert body["networkProxy"] == {"enabled": False}
    assert body["timestamp"]


def test_health_with_network_proxy(make_provider, make_config):
    config = make_config(make_provider("openai"), network_proxy={"enabled": True, "host": "127.0.0.1", "port": 7890})
    assert gateway(config).get("/health").json()["networkProxy"] == {"enabled": True}


def test_unknown_path_returns_error_envelope(make_provider, make_config):
    response = gateway(make_config(make_provider("openai"))).get("/v1/complete")
    assert response.status_code == 404
    assert response.json()["type"] == "error"
    assert response.json()["error"]["type"] == "not_found_error"


def test_wrong_method_returns_error_envelope(make_provider, make_config):
    response = gateway(make_config(make_provider("openai"))).get("/v1/messages")
    assert response.status_code == 405
    assert response.json()["error"]["type"] == "invalid_request_error"


def test_invalid_json_body(make_provider, make_config):
    upstream = Upstream()
    client = gateway(make_config(make_provider("openai")), upstream)
    response = client.post("/v1/messages", content=b"{broken", headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"
    assert upstream.requests == []


def test_missing_messages_field(make_provider, make_config):
    response = gateway(make_config(make_provider("openai"))).post("/v1/messages", json={"model": "x"})
    assert response.status_code == 400


def test_access_token_is_enforced(make_provider, make_config):
    upstream = Upstream()
    client = gateway(make_config(make_provider("openai"), access_token="ccb-secret"), upstream)

    assert client.post("/v1/messages", json=MESSAGE).status_code == 401
    wrong = client.post("/v1/messages", json=MESSAGE, headers={"x-api-key": "ccb-wrong"})
    assert wrong.status_code == 401
    assert wrong.json()["error"]["type"] == "authentication_error"
    assert upstream.requests == []

    assert client.post("/v1/messages", json=MESSAGE, headers={"x-api-key": "ccb-secret"}).status_code == 200
    bearer = client.post("/v1/messages", json=MESSAGE, headers={"Authorization": "Bearer ccb-secret"})
    assert bearer.status_code == 200
    assert len(upstream.requests) == 2


def test_disabled_provider_is_reported_without_upstream_call(make_provider, make_config):
    upstream = Upstream()
    config = make_config(
        make_provider("openai", name="Primary", enabled=False),
        make_provider("deepseek", id="backup", name="Backup"),
    )
    response = gateway(config, upstream).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["type"] == "provider_error"
    assert "Primary" in error["message"]
    assert upstream.requests == []


def test_missing_provider_is_reported(make_provider, make_config):
    upstream = Upstream()
    config = make_config(make_provider("openai"), current_provider_id="deleted")
    response = gateway(config, upstream).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 500
    assert "'deleted'" in response.json()["error"]["message"]
    assert upstream.requests == []


def test_non_streaming_request_is_translated(make_provider, make_config):
    upstream = Upstream()
    client = gateway(make_config(make_provider("openai")), upstream)

    response = client.post("/v1/messages", json=MESSAGE)

    assert response.status_code == 200
    body = response.json()
    assert body["type"] == "message"
    assert body["model"] == "gpt-4o"
    assert body["content"] == [{"type": "text", "text": "echo: Hello"}]
    assert body["stop_reason"] == "end_turn"
    assert body["usage"] == {"input_tokens": 3, "output_tokens": 2}

    sent = upstream.requests[0]
    assert str(sent.url) == "https://api.openai.com/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer sk-openai-secret"
    assert json.loads(sent.content)["model"] == "gpt-4o"


def test_upstream_json_error_is_passed_through(make_provider, make_config):
    error_body = {"error": {"message": "slow down", "type": "rate_limit_exceeded"}}
    upstream = Upstream(lambda request: httpx.Response(429, json=error_body))
    response = gateway(make_config(make_provider("openai")), upstream).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 429
    assert response.json() == error_body


def test_upstream_text_error_is_wrapped(make_provider, make_config):
    upstream = Upstream(lambda request: httpx.Response(503, text="upstream down"))
    response = gateway(make_config(make_provider("openai")), upstream).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 503
    assert response.json() == {"type": "error", "error": {"type": "api_error", "message": "upstream down"}}


def test_upstream_timeout_maps_to_504(make_provider, make_config):
    def _timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    response = gateway(make_config(make_provider("openai")), Upstream(_timeout)).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 504
    assert response.json()["error"]["type"] == "timeout_error"


def test_upstream_connection_failure_maps_to_500(make_provider, make_config):
    def _refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    response = gateway(make_config(make_provider("openai")), Upstream(_refused)).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["type"] == "api_error"
    assert "Openai test" in error["message"]


def test_non_json_upstream_body_is_502(make_provider, make_config):
    upstream = Upstream(lambda request: httpx.Response(200, content=b"<html>maintenance</html>"))
    response = gateway(make_config(make_provider("openai")), upstream).post("/v1/messages", json=MESSAGE)
    assert response.status_code == 502
    assert response.json()["error"]["type"] == "api_error"


def test_unexpected_failure_still_returns_envelope(make_provider, make_config):
    class BrokenTransformer(OpenAITransformer):
        def transform_response(self, response, provider, model=None):
            raise RuntimeError("boom")

    client = gateway(
        make_config(make_provider("openai")),
        transformers=TransformerRegistry([BrokenTransformer()]),
    )
    response = client.post("/v1/messages", json=MESSAGE)
    assert response.status_code == 500
    assert response.json() == {"type": "error", "error": {"type": "api_error", "message": "Internal server error"}}


def test_streaming_request_emits_canonical_events(make_provider, make_config):
    upstream = Upstream(openai_stream)
    client = gateway(make_config(make_provider("openai")), upstream)

    response = client.post("/v1/messages", json=dict(MESSAGE, stream=True))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    events = frames(response.content)
    assert [f.event for f in events] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    text = "".join(json.loads(f.data)["delta"]["text"] for f in events[2:4])
    assert text == "Hi there"
    assert json.loads(upstream.requests[0].content)["stream_options"] == {"include_usage": True}


def test_streaming_upstream_error_status_is_passed_through(make_provider, make_config):
    error_body = {"error": {"message": "bad key", "type": "invalid_api_key"}}
    upstream = Upstream(lambda request: httpx.Response(401, json=error_body))
    response = gateway(make_config(make_provider("openai")), upstream).post(
        "/v1/messages", json=dict(MESSAGE, stream=True)
    )
    assert response.status_code == 401
    assert response.json() == error_body


def test_anthropic_stream_and_headers_are_forwarded(make_provider, make_config):
    body = (
        'event: message_start\ndata: {"type":"message_start","message":{"id":"msg_1"}}\n\n'
        'event: message_stop\ndata: {"type":"message_stop"}\n\n'
    ).encode()
    upstream = Upstream(lambda request: httpx.Response(200, content=body))
    client = gateway(make_config(make_provider("anthropic")), upstream)

    response = client.post(
        "/v1/messages",
        json=dict(MESSAGE, stream=True),
        headers={"anthropic-beta": "prompt-caching-2024-07-31"},
    )

    assert [f.event for f in frames(response.content)] == ["message_start", "message_stop"]
    sent = upstream.requests[0]
    assert str(sent.url) == "https://api.anthropic.com/v1/messages"
    assert sent.headers["x-api-key"] == "sk-anthropic-secret"
    assert sent.headers["anthropic-beta"] == "prompt-caching-2024-07-31"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    assert json.loads(sent.content) == dict(MESSAGE, stream=True)


def test_models_endpoint_lists_provider_models(make_provider, make_config):
    provider = make_provider("openrouter", models=["anthropic/claude-3.5-sonnet", "openai/gpt-4o"])
    client = gateway(make_config(provider, access_token="ccb-secret"))
    assert client.get("/v1/models").status_code == 401
    response = client.get("/v1/models", headers={"x-api-key": "ccb-secret"})
    assert [m["id"] for m in response.json()["data"]] == ["anthropic/claude-3.5-sonnet", "openai/gpt-4o"]


@pytest.mark.asyncio
async def test_request_events_are_published_with_masked_keys(make_provider, make_config):
    channel = EventChannel()
    subscription = channel.subscribe()
    config = make_config(make_provider("openai"), logging={"enabled": True, "level": "info"})
    service = GatewayService(config, channel=channel, transport=Upstream().transport)

    transport = httpx.ASGITransport(app=create_app(service))
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as client:
        response = await client.post("/v1/messages", json=MESSAGE)
    assert response.status_code == 200

    events = subscription.pending()
    assert [e.data["type"] for e in events] == ["request", "response"]
    assert all(e.kind == "log" for e in events)
    assert events[0].data["id"] == events[1].data["id"]
    assert events[0].data["id"].startswith("req_")
    assert events[0].data["headers"]["Authorization"] == "Bea***ret"
    assert "sk-openai-secret" not in json.dumps([e.data for e in events])
    assert events[1].data["statusCode"] == 200
    await service.shutdown()


@pytest.mark.asyncio
async def test_logging_disabled_publishes_nothing(make_provider, make_config):
    channel = EventChannel()
    subscription = channel.subscribe()
    service = GatewayService(make_config(make_provider("openai")), channel=channel, transport=Upstream().transport)

    transport = httpx.ASGITransport(app=create_app(service))
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as client:
        await client.post("/v1/messages", json=MESSAGE)
    assert subscription.pending() == []


@pytest.mark.asyncio
async def test_concurrent_requests_stay_isolated(make_provider, make_config):
    upstream = Upstream()
    alpha = make_provider("openai", id="alpha", api_key="sk-alpha-key")
    bravo = make_provider("deepseek", id="bravo", api_key="sk-bravo-key")
    service_a = GatewayService(make_config(alpha), transport=upstream.transport)
    service_b = GatewayService(make_config(bravo), transport=upstream.transport)

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(service_a)), base_url="http://gateway-a"
    ) as client_a, httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(service_b)), base_url="http://gateway-b"
    ) as client_b:

        async def call(index: int):
            client = client_a if index % 2 == 0 else client_b
            payload = dict(MESSAGE, messages=[{"role": "user", "content": f"marker-{index}"}])
            return index, await client.post("/v1/messages", json=payload)

        results = await asyncio.gather(*(call(i) for i in range(50)))

    for index, response in results:
        assert response.status_code == 200
        assert response.json()["content"][0]["text"] == f"echo: marker-{index}"

    assert len(upstream.requests) == 50
    for request in upstream.requests:
        marker = int(json.loads(request.content)["messages"][-1]["content"].split("-")[1])
        if request.headers["authorization"] == "Bearer sk-alpha-key":
            assert request.url.host == "api.openai.com"
            assert marker % 2 == 0
        else:
            assert request.headers["authorization"] == "Bearer sk-bravo-key"
            assert request.url.host == "api.deepseek.com"
            assert marker % 2 == 1

    await service_a.shutdown()
    await service_b.shutdown()


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks, fail_with=None):
        self._chunks = chunks
        self._fail_with = fail_with
        self.closed = False

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._fail_with is not None:
            raise self._fail_with

    async def aclose(self) -> None:
        self.closed = True


def _chunk(content: str) -> bytes:
    payload = {"id": "chatcmpl-3", "model": "gpt-4o", "choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n\n".encode()


@pytest.mark.asyncio
async def test_closing_relay_closes_upstream(make_provider):
    provider = make_provider("openai")
    transformer = OpenAITransformer()
    stream = TrackingStream([_chunk("one"), _chunk("two"), _chunk("three")])
    response = httpx.Response(200, stream=stream)
    state = transformer.create_stream_state(MESSAGE, provider)

    relay = relay_stream(response, transformer, provider, state)
    first = await relay.__anext__()
    assert first.startswith(b"event: message_start")
    assert stream.closed is False

    await relay.aclose()
    assert stream.closed is True


@pytest.mark.asyncio
async def test_mid_stream_transport_error_emits_error_event(make_provider):
    provider = make_provider("openai")
    transformer = OpenAITransformer()
    stream = TrackingStream([_chunk("partial")], fail_with=httpx.ReadError("connection reset"))
    response = httpx.Response(200, stream=stream)
    state = transformer.create_stream_state(MESSAGE, provider)

    body = b"".join([chunk async for chunk in relay_stream(response, transformer, provider, state)])

    events = frames(body)
    assert [f.event for f in events] == ["message_start", "content_block_start", "content_block_delta", "error"]
    assert json.loads(events[-1].data) == {
        "type": "error",
        "error": {"type": "api_error", "message": "Upstream stream interrupted: connection reset"},
    }
    assert stream.closed is True


def test_wrong_shape_stream_chunk_does_not_truncate_stream(make_provider, make_config):
    def stream_with_bad_chunk(request: httpx.Request) -> httpx.Response:
        raw = _chunk("Hi") + b'data: {"choices":[null]}\n\n' + _chunk(" there") + b"data: [DONE]\n\n"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw)

    client = gateway(make_config(make_provider("openai")), Upstream(stream_with_bad_chunk))
    response = client.post("/v1/messages", json=dict(MESSAGE, stream=True))

    assert response.status_code == 200
    events = frames(response.content)
    assert [f.event for f in events] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert "".join(json.loads(f.data)["delta"]["text"] for f in events[2:4]) == "Hi there"


class ExplodingStreamTransformer(OpenAITransformer):
    def transform_stream_chunk(self, chunk, provider, state):
        raise RuntimeError("translator bug")


@pytest.mark.asyncio
async def test_translation_failure_ends_stream_with_error_event(make_provider):
    provider = make_provider("openai")
    transformer = ExplodingStreamTransformer()
    stream = TrackingStream([_chunk("one"), _chunk("two")])
    response = httpx.Response(200, stream=stream)
    state = transformer.create_stream_state(MESSAGE, provider)

    body = b"".join([chunk async for chunk in relay_stream(response, transformer, provider, state)])

    events = frames(body)
    assert [f.event for f in events] == ["error"]
    assert json.loads(events[0].data) == {
        "type": "error",
        "error": {"type": "api_error", "message": "Stream translation failed"},
    }
    assert stream.closed is True
