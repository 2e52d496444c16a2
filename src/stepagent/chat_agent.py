"""
ReAct agent backed by a chat model with tool calling.

Each ``think`` sends the running transcript and the registry's tool
schemas to the model. A reply with tool calls becomes a ToolAction; a
plain reply becomes Finish with the reply text as the answer. Tool
results are appended to the transcript as tool messages so the next
``think`` sees them.
"""

import logging
from collections.abc import Generator
from typing import Any

from stepagent.agent import ReActAgent
from stepagent.errors import ActionExecutionError, ToolExecutionError
from stepagent.llm import ChatResponse, LLMClient
from stepagent.tool_executor import BatchResult
from stepagent.types import (
    Action,
    ActionResult,
    Finish,
    Message,
    Observation,
    Role,
    StreamChunk,
    Thought,
    ToolAction,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use the provided tools when they help "
    "answer the request, then reply with the final answer."
)


class ChatReActAgent(ReActAgent):
    """A ReActAgent whose reasoning is a chat completion call."""

    def __init__(
        self,
        name: str,
        llm: LLMClient,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.llm = llm
        self.system_prompt = system_prompt
        self.messages: list[Message] = []

    def _prepare_transcript(self, input: Any) -> list[dict[str, Any]]:
        if not self.messages:
            if self.system_prompt:
                self.messages.append(Message(role=Role.SYSTEM, content=self.system_prompt))
            self.messages.append(Message(role=Role.USER, content=str(input)))

        # A failed step can leave tool calls without results; drop them
        # before asking again.
        last = self.messages[-1]
        if last.role == Role.ASSISTANT and last.tool_calls:
            logger.debug(f"Agent {self.name} discarding unanswered tool calls before retry")
            self.messages.pop()

        return [m.to_dict() for m in self.messages]

    def _tool_schemas(self) -> list[dict[str, Any]] | None:
        return self.tool_registry.get_schemas() or None

    def _thought_from_response(self, response: ChatResponse) -> Thought:
        self.messages.append(Message.from_dict(response.to_message()))
        action: Action
        if response.has_tool_calls:
            action = ToolAction(calls=list(response.tool_calls))
        else:
            action = Finish(answer=response.content)
        return Thought(text=response.content, action=action)

    def think(self, input: Any) -> Thought:
        response = self.llm.chat(self._prepare_transcript(input), tools=self._tool_schemas())
        return self._thought_from_response(response)

    def think_stream(self, input: Any) -> Generator[StreamChunk, None, Thought]:
        response = yield from self.llm.stream_chat(
            self._prepare_transcript(input),
            tools=self._tool_schemas(),
        )
        return self._thought_from_response(response)

    def act(self, input: Any, action: Action) -> ActionResult:
        try:
            return super().act(input, action)
        except ActionExecutionError as e:
            # Unknown tools are reported back to the model instead of
            # failing the step.
            if isinstance(e.__cause__, ToolExecutionError):
                return ActionResult.failed(e.__cause__)
            raise

    def observe(self, input: Any, thought: Thought, result: ActionResult) -> Observation:
        calls = thought.action.calls if isinstance(thought.action, ToolAction) else []
        lines: list[str] = []

        if isinstance(result.output, BatchResult):
            for tool_result in result.output:
                self.messages.append(Message(
                    role=Role.TOOL,
                    content=tool_result.content,
                    name=tool_result.tool_name,
                    tool_call_id=tool_result.tool_call_id,
                ))
                lines.append(f"{tool_result.tool_name}: {tool_result.content}")
        else:
            error = f"Error: {result.error}"
            for call in calls:
                self.messages.append(Message(
                    role=Role.TOOL,
                    content=error,
                    name=call.name,
                    tool_call_id=call.id,
                ))
            lines.append(error)

        return Observation(text="\n".join(lines), metadata={"success": result.success})

    def reset(self) -> None:
        super().reset()
        self.messages.clear()
