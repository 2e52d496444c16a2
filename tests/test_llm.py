"""
Tests for the LLM client, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from stepagent.config import LLMConfig
from stepagent.errors import LLMError
from stepagent.llm import ChatResponse, LLMClient, iter_sse_data
from stepagent.types import Role


def make_config() -> LLMConfig:
    return LLMConfig(base_url="http://llm.test/v1", api_key="key", model="test-model")


def completion(content: str | None = "Hello", tool_calls: list[dict] | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [
            {"message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}
        ]
    }


def sse(*events: dict) -> bytes:
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def make_client(handler, **kwargs) -> tuple[LLMClient, list[float]]:
    delays: list[float] = []
    client = LLMClient(
        make_config(),
        retry_delay=0.25,
        transport=httpx.MockTransport(handler),
        sleep=delays.append,
        **kwargs,
    )
    return client, delays


class TestChat:
    """Tests for LLMClient.chat."""

    def test_sends_payload_and_parses_response(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion("Hi there"))

        client, _ = make_client(handler)
        tools = [{"type": "function", "function": {"name": "echo", "parameters": {}}}]

        response = client.chat([{"role": "user", "content": "Hello"}], tools=tools, tool_choice="auto")

        assert response.content == "Hi there"
        assert response.is_complete is True
        request = seen[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer key"
        payload = json.loads(request.content)
        assert payload["model"] == "test-model"
        assert payload["tools"] == tools
        assert payload["tool_choice"] == "auto"
        assert "stream" not in payload

    def test_parses_tool_calls(self):
        tool_calls = [
            {"id": "call_1", "type": "function", "function": {"name": "echo", "arguments": '{"text": "hi"}'}},
            {"id": "call_2", "type": "function", "function": {"name": "raw", "arguments": "not json"}},
        ]

        client, _ = make_client(lambda request: httpx.Response(200, json=completion(None, tool_calls)))

        response = client.chat([{"role": "user", "content": "go"}])

        assert response.has_tool_calls is True
        assert response.content == ""
        assert response.tool_calls[0].arguments == {"text": "hi"}
        assert response.tool_calls[1].arguments == {"raw": "not json"}

    def test_retries_on_service_unavailable(self):
        responses = [httpx.Response(503, text="busy"), httpx.Response(200, json=completion("ok"))]

        client, delays = make_client(lambda request: responses.pop(0))

        assert client.chat([{"role": "user", "content": "x"}]).content == "ok"
        assert delays == [0.25]

    def test_rate_limit_honours_retry_after(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json=completion("ok")),
        ]

        client, delays = make_client(lambda request: responses.pop(0))

        assert client.chat([{"role": "user", "content": "x"}]).content == "ok"
        assert delays == [2.0, 0.25]

    def test_retries_on_network_error(self):
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=completion("ok"))

        client, _ = make_client(handler)

        assert client.chat([{"role": "user", "content": "x"}]).content == "ok"
        assert attempts == 2

    def test_client_error_is_not_retried(self):
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(400, text="bad request")

        client, _ = make_client(handler)

        with pytest.raises(LLMError, match="HTTP 400"):
            client.chat([{"role": "user", "content": "x"}])
        assert attempts == 1

    def test_retries_exhausted(self):
        client, delays = make_client(lambda request: httpx.Response(503), max_retries=2)

        with pytest.raises(LLMError, match="after 3 attempts"):
            client.chat([{"role": "user", "content": "x"}])
        assert delays == [0.25, 0.25]

    def test_malformed_response(self):
        client, _ = make_client(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(LLMError, match="Malformed"):
            client.chat([{"role": "user", "content": "x"}])


class TestStreamChat:
    """Tests for LLMClient.stream_chat."""

    def drain(self, generator):
        chunks = []
        while True:
            try:
                chunks.append(next(generator))
            except StopIteration as stop:
                return chunks, stop.value

    def test_streams_text_deltas(self):
        body = sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
        )
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

        client, _ = make_client(handler)

        chunks, response = self.drain(client.stream_chat([{"role": "user", "content": "x"}]))

        assert [c.content for c in chunks] == ["Hel", "lo"]
        assert all(c.role is Role.ASSISTANT for c in chunks)
        assert response.content == "Hello"
        assert response.finish_reason == "stop"
        assert seen[0]["stream"] is True

    def test_accumulates_tool_call_deltas(self):
        body = sse(
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_1", "function": {"name": "echo", "arguments": ""}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": '{"text": '}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": '"hi"}'}},
            ]}, "finish_reason": "tool_calls"}]},
        )

        client, _ = make_client(lambda request: httpx.Response(200, content=body))

        chunks, response = self.drain(client.stream_chat([{"role": "user", "content": "x"}]))

        assert chunks == []
        assert response.has_tool_calls is True
        assert response.tool_calls[0].id == "call_1"
        assert response.tool_calls[0].name == "echo"
        assert response.tool_calls[0].arguments == {"text": "hi"}
        assert response.finish_reason == "tool_calls"

    def test_tool_calls_without_ids_get_distinct_ids(self):
        body = sse(
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"name": "echo", "arguments": '{"text": "a"}'}},
                {"index": 1, "function": {"name": "echo", "arguments": '{"text": "b"}'}},
            ]}, "finish_reason": "tool_calls"}]},
        )

        client, _ = make_client(lambda request: httpx.Response(200, content=body))

        _, response = self.drain(client.stream_chat([{"role": "user", "content": "x"}]))

        ids = [tc.id for tc in response.tool_calls]
        assert len(ids) == 2
        assert all(ids)
        assert ids[0] != ids[1]

    def test_http_error(self):
        client, _ = make_client(lambda request: httpx.Response(500, text="server error"))

        with pytest.raises(LLMError, match="HTTP 500"):
            self.drain(client.stream_chat([{"role": "user", "content": "x"}]))


class TestSSEParsing:
    """Tests for iter_sse_data."""

    def test_stops_at_done_and_skips_other_lines(self):
        lines = [
            ": keep-alive",
            "",
            'data: {"n": 1}',
            "event: ping",
            'data: {"n": 2}',
            "data: [DONE]",
            'data: {"n": 3}',
        ]

        assert [event["n"] for event in iter_sse_data(lines)] == [1, 2]

    def test_invalid_json(self):
        with pytest.raises(LLMError, match="Invalid stream event"):
            list(iter_sse_data(["data: {oops"]))


class TestChatResponse:
    """Tests for ChatResponse."""

    def test_to_message_includes_tool_calls(self):
        tool_calls = [
            {"id": "call_1", "type": "function", "function": {"name": "echo", "arguments": '{"text": "hi"}'}},
        ]
        response = ChatResponse.from_api_response(completion("thinking", tool_calls))

        message = response.to_message()

        assert message["role"] == "assistant"
        assert message["content"] == "thinking"
        assert message["tool_calls"][0]["function"]["name"] == "echo"
        assert json.loads(message["tool_calls"][0]["function"]["arguments"]) == {"text": "hi"}
