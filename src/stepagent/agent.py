"""
Agent run loop and ReAct step engine.

BaseAgent owns an AgentState and drives the run state machine:

    NOT_STARTED -> RUNNING -> FINISHED | FAILED | TIMEOUT | INTERRUPTED

``run(input)`` repeats ``step(input)`` while the loop-control strategy
allows it, counting every iteration. A step that raises is handed to the
fallback strategy, which either retries (returning a replacement output)
or escalates with AgentExecutionError. A step whose thought proposed
``Finish`` ends the loop.

Once a run has reached a terminal status, ``run`` returns the cached
output (or re-raises the stored failure) without executing anything;
call ``reset()`` to start over.

ReActAgent fixes the order of one iteration - think, act, observe,
generate output - and leaves the policy to four overridable hooks.
One agent's loop is single-threaded: never call ``run`` on the same
agent from two threads.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator, Iterator
from typing import Any

from stepagent.abort import AbortSignal
from stepagent.actions import ActionContext, ActionExecutor, SyncActionExecutor
from stepagent.config import LoopConfig
from stepagent.errors import AgentExecutionError
from stepagent.listeners import (
    ExecutionListener,
    ListenerRegistry,
    LoggingListener,
    RunListener,
)
from stepagent.state import AgentState, RunStatus
from stepagent.strategies import (
    FallbackStrategy,
    LoopControlStrategy,
    MaxLoopCountControl,
    fallback_from_config,
)
from stepagent.streaming import StreamOutputAggregator, text_aggregator
from stepagent.tool_executor import ToolExecutor
from stepagent.tools import ToolRegistry
from stepagent.types import (
    Action,
    ActionKind,
    ActionResult,
    Observation,
    Role,
    StepOutput,
    StreamChunk,
    Thought,
)

logger = logging.getLogger(__name__)

StepStream = Generator[StreamChunk, None, StepOutput | None]


def as_step_output(value: Any) -> StepOutput:
    if isinstance(value, StepOutput):
        return value
    return StepOutput(content=value)


class BaseAgent(ABC):
    """
    An agent with a bounded run loop.

    Subclasses implement ``_do_step``. Strategies, executors and the tool
    registry are injected; anything left out gets a default built from
    ``config``.
    """

    def __init__(
        self,
        name: str,
        *,
        config: LoopConfig | None = None,
        state: AgentState | None = None,
        loop_control: LoopControlStrategy | None = None,
        fallback: FallbackStrategy | None = None,
        action_executor: ActionExecutor | None = None,
        tool_registry: ToolRegistry | None = None,
        tool_executor: ToolExecutor | None = None,
        abort_signal: AbortSignal | None = None,
        log_progress: bool = True,
    ):
        self.name = name
        self.config = config or LoopConfig.from_env()
        self.state = state or AgentState()
        self.loop_control = loop_control or MaxLoopCountControl(self.config.max_loops)
        self.fallback = fallback or fallback_from_config(self.config)
        self.action_executor = action_executor or SyncActionExecutor()
        self.tool_registry = tool_registry or ToolRegistry()
        self.tool_executor = tool_executor or ToolExecutor()
        self.abort_signal = abort_signal

        self.run_listeners: ListenerRegistry[RunListener] = ListenerRegistry()
        self.execution_listeners: ListenerRegistry[ExecutionListener] = ListenerRegistry()
        if log_progress:
            log_listener = LoggingListener(name)
            self.run_listeners.register(log_listener)
            self.execution_listeners.register(log_listener)

    def register_run_listener(self, listener: RunListener) -> None:
        self.run_listeners.register(listener)

    def unregister_run_listener(self, listener: RunListener) -> None:
        self.run_listeners.unregister(listener)

    def register_execution_listener(self, listener: ExecutionListener) -> None:
        self.execution_listeners.register(listener)

    def unregister_execution_listener(self, listener: ExecutionListener) -> None:
        self.execution_listeners.unregister(listener)

    @property
    def status(self) -> RunStatus:
        return self.state.status

    def run(self, input: Any) -> Any:
        """
        Run the loop to completion and return the final output.

        Raises:
            AgentExecutionError: if the fallback strategy gave up, or the
                agent is already running
        """
        if self._is_settled():
            return self._cached_result()

        self._begin(input)
        output: StepOutput | None = None
        try:
            while self.loop_control.should_continue(self.state):
                self._notify_before_step(input)
                try:
                    output = self.step(input)
                except Exception as e:
                    output = as_step_output(self.fallback.fallback(self, input, e))
                finally:
                    self.state.incr_loop_count()
                self._notify_after_step(input, output)
                if output.finished:
                    break
        except Exception as e:
            raise self._fail(input, e)
        except BaseException as e:
            self._interrupt(input, e)
            raise

        return self._complete(input, output)

    def run_stream(self, input: Any) -> Generator[StreamChunk, None, Any]:
        """
        Run the loop, yielding each step's partial outputs as they arrive.

        Each step's chunks are folded by a fresh aggregator into that
        step's output. The generator's return value is the final output,
        available as the value of ``yield from``.
        """
        if self._is_settled():
            return self._cached_result()

        self._begin(input)
        output: StepOutput | None = None
        try:
            while self.loop_control.should_continue(self.state):
                self._notify_before_step(input)
                try:
                    output = yield from self._streamed_step(input)
                except Exception as e:
                    output = as_step_output(self.fallback.fallback(self, input, e))
                finally:
                    self.state.incr_loop_count()
                self._notify_after_step(input, output)
                if output.finished:
                    break
        except Exception as e:
            raise self._fail(input, e)
        except BaseException as e:
            self._interrupt(input, e)
            raise

        return self._complete(input, output)

    def step(self, input: Any) -> StepOutput:
        """Run exactly one iteration. Retrying fallbacks call this too."""
        try:
            return as_step_output(self._do_step(input))
        except Exception as e:
            logger.debug(f"Agent {self.name} step #{self.state.loop_count + 1} raised: {e!r}")
            raise

    def _notify_before_step(self, input: Any) -> None:
        self.execution_listeners.notify(lambda listener: listener.before_step(self, input))

    def _notify_after_step(self, input: Any, output: StepOutput) -> None:
        self.execution_listeners.notify(lambda listener: listener.after_step(self, input, output))

    @abstractmethod
    def _do_step(self, input: Any) -> StepOutput | Any:
        ...

    def step_stream(self, input: Any) -> StepStream:
        """
        Streaming variant of one iteration.

        Yields StreamChunks and may return a StepOutput. A returned output
        with content is the step's result as is. When nothing is returned,
        or the content is None, the yielded chunks are folded by
        ``create_aggregator`` into the content. The default runs a regular
        step, emits its text as a single chunk and returns it unchanged.
        """
        output = as_step_output(self._do_step(input))
        if output.text:
            yield StreamChunk(content=output.text)
        return output

    def create_aggregator(self) -> StreamOutputAggregator[StreamChunk, Any]:
        """A fresh aggregator for one streamed step."""
        return text_aggregator()

    def _streamed_step(self, input: Any) -> Generator[StreamChunk, None, StepOutput]:
        chunks: list[StreamChunk] = []
        envelope = yield from _collect(self.step_stream(input), chunks)

        if envelope is not None and envelope.content is not None:
            return envelope
        if not chunks:
            return envelope or StepOutput(content=None)
        aggregated = self.create_aggregator().aggregate(chunks)
        if envelope is None:
            return StepOutput(content=aggregated)
        envelope.content = aggregated
        return envelope

    def _is_settled(self) -> bool:
        if self.state.status.is_finished:
            logger.info(f"Agent {self.name} has been run ({self.state.status.value}), will exit.")
            return True
        return False

    def _cached_result(self) -> Any:
        if self.state.status is RunStatus.FINISHED:
            return self.state.output
        error = self.state.last_error
        if isinstance(error, AgentExecutionError):
            raise error
        raise AgentExecutionError(
            f"Agent {self.name} previously ended with status {self.state.status.value}: {error}"
        ) from error

    def _begin(self, input: Any) -> None:
        if self.state.status is RunStatus.RUNNING:
            raise AgentExecutionError(f"Agent {self.name} is already running")
        self.state.start()
        self.run_listeners.notify(lambda listener: listener.before_run(self, input))

    def _complete(self, input: Any, output: StepOutput | None) -> Any:
        result = output.content if output is not None else None
        self.state.output = result
        self.state.status = RunStatus.FINISHED
        self.run_listeners.notify(lambda listener: listener.after_run(self, input, result))
        return result

    def _fail(self, input: Any, cause: Exception) -> AgentExecutionError:
        if not self.state.status.is_finished:
            self.state.record_error(cause)
        if isinstance(cause, AgentExecutionError):
            error = cause
        else:
            error = AgentExecutionError(f"Agent {self.name} execution failed: {cause}")
            error.__cause__ = cause
        self.state.last_error = error
        self.run_listeners.notify(lambda listener: listener.after_run(self, input, None, error))
        return error

    def _interrupt(self, input: Any, cause: BaseException) -> None:
        if isinstance(cause, GeneratorExit):
            error = AgentExecutionError(f"Agent {self.name} stream closed by consumer")
        else:
            error = AgentExecutionError(f"Agent {self.name} interrupted: {cause!r}")
        error.__cause__ = cause
        self.state.last_error = error
        self.state.status = RunStatus.INTERRUPTED
        self.run_listeners.notify(lambda listener: listener.after_run(self, input, None, error))

    def reset(self) -> None:
        """Return to NOT_STARTED and clear history, tracker and counters."""
        self.state.reset()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, status={self.state.status.value})"


def _collect(
    stream: Generator[StreamChunk, None, StepOutput | None] | Iterator[StreamChunk],
    sink: list[StreamChunk],
) -> Generator[StreamChunk, None, StepOutput | None]:
    """Re-yield every chunk of ``stream`` while keeping a copy in ``sink``."""
    iterator = iter(stream)
    while True:
        try:
            chunk = next(iterator)
        except StopIteration as stop:
            return stop.value
        sink.append(chunk)
        yield chunk


class ReActAgent(BaseAgent):
    """
    Reasoning-and-acting agent: think -> act -> observe -> output.

    ``think`` must be implemented. ``act`` runs the proposed action
    through the agent's ActionExecutor; ``observe`` and
    ``generate_output`` have simple text defaults.
    """

    @abstractmethod
    def think(self, input: Any) -> Thought:
        ...

    def act(self, input: Any, action: Action) -> ActionResult:
        return self.action_executor.execute(self.action_context(input), action)

    def observe(self, input: Any, thought: Thought, result: ActionResult) -> Observation:
        if result.success:
            text = "" if result.output is None else str(result.output)
        else:
            text = f"Error: {result.error}"
        return Observation(text=text, metadata={"success": result.success})

    def generate_output(self, input: Any, thought: Thought, observation: Observation | None) -> Any:
        if observation is None:
            answer = getattr(thought.action, "answer", "")
            return answer or thought.text
        return observation.text

    def action_context(self, input: Any) -> ActionContext:
        return ActionContext(
            history=self.state.history,
            tracker=self.state.tracker,
            tool_registry=self.tool_registry,
            tool_executor=self.tool_executor,
            abort_signal=self.abort_signal,
            metadata={"agent": self.name, "turn": self.state.loop_count + 1},
        )

    def _do_step(self, input: Any) -> StepOutput:
        thought = self.think(input)
        action = thought.action
        if action.kind is ActionKind.FINISH:
            return StepOutput(
                content=self.generate_output(input, thought, None),
                finished=True,
                thought=thought,
            )

        result = self.act(input, action)
        observation = self.observe(input, thought, result)
        return StepOutput(
            content=self.generate_output(input, thought, observation),
            thought=thought,
            observation=observation,
        )

    def think_stream(self, input: Any) -> Generator[StreamChunk, None, Thought]:
        """
        Streaming variant of ``think``. Returns the complete Thought.

        The default emits the final answer for a Finish thought and the
        thought text otherwise, as a single chunk.
        """
        thought = self.think(input)
        text = thought.text
        if thought.action.kind is ActionKind.FINISH:
            text = getattr(thought.action, "answer", "") or thought.text
        if text:
            yield StreamChunk(content=text)
        return thought

    def step_stream(self, input: Any) -> StepStream:
        thought = yield from self.think_stream(input)
        if thought.action.kind is ActionKind.FINISH:
            return StepOutput(
                content=self.generate_output(input, thought, None),
                finished=True,
                thought=thought,
            )

        result = self.act(input, thought.action)
        observation = self.observe(input, thought, result)
        yield StreamChunk(content=observation.text, role=Role.TOOL, boundary=True)
        return StepOutput(
            content=self.generate_output(input, thought, observation),
            thought=thought,
            observation=observation,
        )


class FunctionAgent(ReActAgent):
    """A ReActAgent whose ``think`` is a plain callable."""

    def __init__(self, name: str, think: Callable[[BaseAgent, Any], Thought], **kwargs: Any):
        super().__init__(name, **kwargs)
        self._think = think

    def think(self, input: Any) -> Thought:
        return self._think(self, input)
