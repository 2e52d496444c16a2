"""
Core types for the execution engine.

These are the values that flow through one iteration of the loop:
a Thought proposes an Action, the Action produces an ActionResult,
the ActionResult is summarised into an Observation, and all of it is
folded into a StepOutput. They are created per iteration and discarded.

Actions are a tagged variant. The engine branches on ``Action.kind``
and never on the concrete class, so agents are free to subclass
``Invoke`` for their own effect-producing work.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stepagent.actions import ActionContext


class Role(str, Enum):
    """Message roles in a conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class Message:
    """A single message in a chat transcript."""
    role: Role
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": Role(self.role).value,
            "content": self.content,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            result["tool_calls"] = self.tool_calls
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create from OpenAI API format."""
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=data.get("tool_calls"),
        )


@dataclass
class ToolCall:
    """A request to run one registered tool with named arguments."""
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolResult:
    """Outcome of one tool call inside a batch."""
    tool_call_id: str
    tool_name: str
    content: str
    success: bool = True
    error: Exception | None = None


class ActionKind(Enum):
    """Discriminator for the Action variant."""
    FINISH = "finish"
    INVOKE = "invoke"


@dataclass
class ActionResult:
    """Result of executing an action."""
    success: bool
    output: Any = None
    error: Exception | None = None

    @classmethod
    def ok(cls, output: Any = None) -> ActionResult:
        return cls(success=True, output=output)

    @classmethod
    def failed(cls, error: Exception) -> ActionResult:
        return cls(success=False, error=error)


class Action:
    """Base of the Action variant. Use Finish or a subclass of Invoke."""

    kind: ActionKind

    def execute(self, context: ActionContext) -> ActionResult:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


@dataclass
class Finish(Action):
    """Sentinel action: the agent has its answer and the loop should stop."""
    answer: str = ""

    kind = ActionKind.FINISH

    def execute(self, context: ActionContext) -> ActionResult:
        return ActionResult.ok(self.answer)

    def describe(self) -> str:
        return f"finish({self.answer[:80]!r})"


class Invoke(Action):
    """An effect-producing action. Subclasses implement ``execute``."""

    kind = ActionKind.INVOKE


@dataclass
class FunctionAction(Invoke):
    """Invoke a plain callable with the action context."""
    fn: Callable[[ActionContext], Any]
    name: str = "function"

    def execute(self, context: ActionContext) -> ActionResult:
        output = self.fn(context)
        if isinstance(output, ActionResult):
            return output
        return ActionResult.ok(output)

    def describe(self) -> str:
        return self.name


@dataclass
class ToolAction(Invoke):
    """Run a batch of tool calls through the context's ToolExecutor."""
    calls: list[ToolCall] = field(default_factory=list)

    def execute(self, context: ActionContext) -> ActionResult:
        if context.tool_executor is None:
            raise RuntimeError("ToolAction requires a tool executor in the action context")
        batch = context.tool_executor.execute_batch(context.tool_context(), self.calls)
        return ActionResult(success=batch.all_success, output=batch)

    def describe(self) -> str:
        names = ", ".join(call.name for call in self.calls)
        return f"tools[{names}]"


@dataclass
class Thought:
    """Reasoning output proposing the next action."""
    text: str
    action: Action = field(default_factory=Finish)


@dataclass
class Observation:
    """The agent-facing summary of an action's result."""
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepOutput:
    """
    Output of one loop iteration.

    ``finished`` is set by the step engine when the thought proposed
    ``Finish``; the run loop stops after such a step.
    """
    content: Any
    finished: bool = False
    thought: Thought | None = None
    observation: Observation | None = None

    @property
    def text(self) -> str:
        return "" if self.content is None else str(self.content)


@dataclass
class StreamChunk:
    """
    Partial output unit emitted by a streaming step.

    Chunks are ordered within one step's stream. ``boundary`` forces the
    message reducer to start a new segment even if the role is unchanged.
    """
    content: str
    role: Role = Role.ASSISTANT
    name: str | None = None
    boundary: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageSegment:
    """A run of contiguous chunks from the same speaker."""
    role: Role
    content: str
    name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
