"""
Tests for the chat-model-backed ReAct agent.
"""

from stepagent.chat_agent import ChatReActAgent
from stepagent.config import LoopConfig
from stepagent.llm import ChatResponse
from stepagent.state import RunStatus
from stepagent.strategies import RetryFallback
from stepagent.tools import FunctionTool, ToolDefinition, ToolRegistry
from stepagent.types import Role, StreamChunk, ToolCall


class MockLLMClient:
    """Mock LLM client for testing."""

    def __init__(self, responses: list[ChatResponse] | None = None, failures: int = 0):
        self._responses = responses or []
        self._response_index = 0
        self._failures = failures
        self.calls: list[dict] = []

    def _next(self) -> ChatResponse:
        if self._response_index < len(self._responses):
            response = self._responses[self._response_index]
            self._response_index += 1
            return response
        return ChatResponse(content="Default response", tool_calls=[], finish_reason="stop", raw_response={})

    def chat(self, messages, tools=None, **kwargs) -> ChatResponse:
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        if self._failures > 0:
            self._failures -= 1
            raise RuntimeError("model unavailable")
        return self._next()

    def stream_chat(self, messages, tools=None, **kwargs):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        response = self._next()
        for word in response.content.split(" "):
            yield StreamChunk(content=word + " ")
        return response


def tool_response(*calls: ToolCall) -> ChatResponse:
    return ChatResponse(content="", tool_calls=list(calls), finish_reason="tool_calls", raw_response={})


def text_response(content: str) -> ChatResponse:
    return ChatResponse(content=content, tool_calls=[], finish_reason="stop", raw_response={})


def make_registry() -> ToolRegistry:
    echo = FunctionTool(
        ToolDefinition(
            name="echo",
            description="Echo text back in upper case",
            parameters={"type": "object", "properties": {"text": {"type": "string"}}},
            concurrency_safe=True,
        ),
        lambda text: text.upper(),
    )
    return ToolRegistry([echo])


def make_agent(llm: MockLLMClient, **kwargs) -> ChatReActAgent:
    kwargs.setdefault("config", LoopConfig(max_loops=5))
    kwargs.setdefault("tool_registry", make_registry())
    kwargs.setdefault("log_progress", False)
    return ChatReActAgent("assistant", llm, **kwargs)


class TestChatReActAgent:
    """Tests for ChatReActAgent."""

    def test_plain_answer_finishes(self):
        llm = MockLLMClient([text_response("Paris")])
        agent = make_agent(llm)

        assert agent.run("Capital of France?") == "Paris"
        assert agent.state.loop_count == 1
        first_call = llm.calls[0]
        assert first_call["messages"][0]["role"] == "system"
        assert first_call["messages"][1] == {"role": "user", "content": "Capital of France?"}
        assert first_call["tools"][0]["function"]["name"] == "echo"

    def test_tool_call_round_trip(self):
        llm = MockLLMClient([
            tool_response(ToolCall(id="call_1", name="echo", arguments={"text": "hi"})),
            text_response("The tool said HI"),
        ])
        agent = make_agent(llm)

        assert agent.run("Shout hi") == "The tool said HI"
        assert agent.state.loop_count == 2

        second_messages = llm.calls[1]["messages"]
        assert second_messages[-2]["role"] == "assistant"
        assert second_messages[-2]["tool_calls"][0]["id"] == "call_1"
        assert second_messages[-1] == {
            "role": "tool",
            "content": "HI",
            "name": "echo",
            "tool_call_id": "call_1",
        }
        assert agent.state.tracker.get("call_1").output == "HI"

    def test_unknown_tool_is_reported_to_model(self):
        llm = MockLLMClient([
            tool_response(ToolCall(id="call_1", name="missing", arguments={})),
            text_response("Sorry, I cannot do that"),
        ])
        agent = make_agent(llm)

        assert agent.run("Do it") == "Sorry, I cannot do that"
        tool_message = llm.calls[1]["messages"][-1]
        assert tool_message["role"] == "tool"
        assert "Tool not found: missing" in tool_message["content"]

    def test_no_tools_sends_none(self):
        llm = MockLLMClient([text_response("ok")])
        agent = make_agent(llm, tool_registry=ToolRegistry())

        agent.run("x")

        assert llm.calls[0]["tools"] is None

    def test_retry_after_model_failure(self):
        llm = MockLLMClient([text_response("recovered")], failures=1)
        agent = make_agent(llm, fallback=RetryFallback(max_retries=1))

        assert agent.run("x") == "recovered"
        assert agent.state.retry_count == 1
        assert len(llm.calls) == 2
        assert [m["role"] for m in llm.calls[1]["messages"]] == ["system", "user"]

    def test_reset_clears_transcript(self):
        llm = MockLLMClient([text_response("one"), text_response("two")])
        agent = make_agent(llm)
        agent.run("first")

        agent.reset()

        assert agent.messages == []
        assert agent.run("second") == "two"
        assert llm.calls[1]["messages"][1]["content"] == "second"

    def test_run_stream(self):
        llm = MockLLMClient([
            tool_response(ToolCall(id="call_1", name="echo", arguments={"text": "hi"})),
            text_response("all done"),
        ])
        agent = make_agent(llm)

        stream = agent.run_stream("Shout hi")
        chunks = []
        while True:
            try:
                chunks.append(next(stream))
            except StopIteration as stop:
                output = stop.value
                break

        assert output == "all done"
        assert any(c.role is Role.TOOL and c.content == "echo: HI" for c in chunks)
        assert agent.status is RunStatus.FINISHED
        assert agent.messages[-1].content == "all done"
