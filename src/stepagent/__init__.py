"""
stepagent - A bounded think/act/observe execution engine for agents.

The engine provides:

1. A run loop with an explicit state machine and a bounded loop count
2. A ReAct step engine (think, act, observe, generate output)
3. Fallback strategies on step failure: fail fast or bounded retry
4. Pooled action execution with a bounded queue and batch tool execution
5. Stream aggregation and cooperative cancellation

The reasoning itself is pluggable: implement ``ReActAgent.think`` or use
``ChatReActAgent`` with any OpenAI-compatible backend.
"""

__version__ = "0.1.0"

from stepagent.abort import AbortController, AbortSignal
from stepagent.actions import (
    ActionContext,
    ActionExecutor,
    PooledActionExecutor,
    SyncActionExecutor,
)
from stepagent.agent import BaseAgent, FunctionAgent, ReActAgent
from stepagent.chat_agent import ChatReActAgent
from stepagent.config import EngineConfig, ExecutorConfig, LLMConfig, LoopConfig
from stepagent.coordinator import AgentGroup, CoordinateAgent, FanOutCoordinateAgent
from stepagent.errors import (
    AbortError,
    ActionExecutionError,
    ActionRejectedError,
    AgentExecutionError,
    LLMError,
    StepAgentError,
    ToolArgumentError,
    ToolExecutionError,
    ToolNotFoundError,
)
from stepagent.history import ActionHistory, ActionRecord, ToolCallRecord, ToolCallTracker
from stepagent.listeners import (
    ExecutionListener,
    ListenerRegistry,
    LoggingListener,
    RunListener,
    ToolExecuteListener,
)
from stepagent.llm import ChatResponse, LLMClient
from stepagent.state import AgentState, RunStatus
from stepagent.strategies import (
    FailFastFallback,
    FallbackStrategy,
    LoopControlStrategy,
    MaxLoopCountControl,
    RetryFallback,
    TimeBoxedLoopControl,
)
from stepagent.streaming import StreamOutputAggregator, merge_message_chunks
from stepagent.tool_executor import BatchResult, ToolExecutor, ToolInvocation
from stepagent.tools import (
    DataclassConverter,
    FunctionTool,
    Tool,
    ToolContext,
    ToolConverter,
    ToolDefinition,
    ToolRegistry,
    function_tool,
)
from stepagent.types import (
    Action,
    ActionKind,
    ActionResult,
    Finish,
    FunctionAction,
    Invoke,
    Message,
    MessageSegment,
    Observation,
    Role,
    StepOutput,
    StreamChunk,
    Thought,
    ToolAction,
    ToolCall,
    ToolResult,
)

__all__ = [
    "AbortController",
    "AbortSignal",
    "ActionContext",
    "ActionExecutor",
    "PooledActionExecutor",
    "SyncActionExecutor",
    "BaseAgent",
    "FunctionAgent",
    "ReActAgent",
    "ChatReActAgent",
    "EngineConfig",
    "ExecutorConfig",
    "LLMConfig",
    "LoopConfig",
    "AgentGroup",
    "CoordinateAgent",
    "FanOutCoordinateAgent",
    "AbortError",
    "ActionExecutionError",
    "ActionRejectedError",
    "AgentExecutionError",
    "LLMError",
    "StepAgentError",
    "ToolArgumentError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ActionHistory",
    "ActionRecord",
    "ToolCallRecord",
    "ToolCallTracker",
    "ExecutionListener",
    "ListenerRegistry",
    "LoggingListener",
    "RunListener",
    "ToolExecuteListener",
    "ChatResponse",
    "LLMClient",
    "AgentState",
    "RunStatus",
    "FailFastFallback",
    "FallbackStrategy",
    "LoopControlStrategy",
    "MaxLoopCountControl",
    "RetryFallback",
    "TimeBoxedLoopControl",
    "StreamOutputAggregator",
    "merge_message_chunks",
    "BatchResult",
    "ToolExecutor",
    "ToolInvocation",
    "DataclassConverter",
    "FunctionTool",
    "Tool",
    "ToolContext",
    "ToolConverter",
    "ToolDefinition",
    "ToolRegistry",
    "function_tool",
    "Action",
    "ActionKind",
    "ActionResult",
    "Finish",
    "FunctionAction",
    "Invoke",
    "Message",
    "MessageSegment",
    "Observation",
    "Role",
    "StepOutput",
    "StreamChunk",
    "Thought",
    "ToolAction",
    "ToolCall",
    "ToolResult",
]
