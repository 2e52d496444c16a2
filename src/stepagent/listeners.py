"""
Listener hooks for runs, steps and tool calls.

Listeners are invoked synchronously on the thread driving the agent.
They exist for observability only: a failing listener is logged and
skipped, and never changes what the loop does next. Every notification
iterates over a snapshot of the registered listeners, so a listener may
register or unregister listeners while being notified.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from stepagent.agent import BaseAgent
    from stepagent.tools import Tool
    from stepagent.types import Observation, StepOutput, Thought

logger = logging.getLogger(__name__)

L = TypeVar("L")


class RunListener:
    """Hooks around a whole run. Override what you need."""

    def before_run(self, agent: BaseAgent, input: Any) -> None:
        pass

    def after_run(
        self,
        agent: BaseAgent,
        input: Any,
        output: Any,
        error: Exception | None = None,
    ) -> None:
        pass


class ExecutionListener:
    """Hooks around every loop iteration."""

    def before_step(self, agent: BaseAgent, input: Any) -> None:
        pass

    def after_step(self, agent: BaseAgent, input: Any, output: StepOutput) -> None:
        pass


class ToolExecuteListener:
    """Hooks around every tool call made through a ToolExecutor."""

    def on_input(self, tool: Tool, input: Any) -> None:
        pass

    def on_output(self, tool: Tool, input: Any, output: Any) -> None:
        pass

    def on_exception(self, tool: Tool, input: Any, error: Exception) -> None:
        pass


class ListenerRegistry(Generic[L]):
    """Thread-safe list of listeners notified from a snapshot."""

    def __init__(self) -> None:
        self._listeners: list[L] = []
        self._lock = threading.Lock()

    def register(self, listener: L) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unregister(self, listener: L) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def snapshot(self) -> list[L]:
        with self._lock:
            return list(self._listeners)

    def notify(self, callback: Callable[[L], None]) -> None:
        for listener in self.snapshot():
            try:
                callback(listener)
            except Exception:
                logger.exception(f"Fail to invoke listener {listener!r}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class LoggingListener(RunListener, ExecutionListener):
    """
    Logs the progress of one agent.

    Uses a per-agent logger (``stepagent.agent.<name>``) so a single
    agent's trajectory can be filtered out of a multi-agent run.
    """

    def __init__(self, agent_name: str):
        self.logger = logging.getLogger(f"stepagent.agent.{agent_name}")

    def before_run(self, agent: BaseAgent, input: Any) -> None:
        self.logger.info(f"Agent {agent.name} is ready to run...")

    def after_run(self, agent: BaseAgent, input: Any, output: Any, error: Exception | None = None) -> None:
        if error is not None:
            self.logger.error(f"Agent {agent.name} run failed: {error}")
        else:
            self.logger.info(
                f"Agent {agent.name} run finished after {agent.state.loop_count} loop(s)"
            )

    def before_step(self, agent: BaseAgent, input: Any) -> None:
        self.logger.debug(f"Agent {agent.name} step #{agent.state.loop_count + 1}")

    def after_step(self, agent: BaseAgent, input: Any, output: StepOutput) -> None:
        turn = agent.state.loop_count
        if output.thought is not None:
            self.log_thought(turn, output.thought)
        if output.observation is not None:
            self.log_observation(turn, output.observation)

    def log_thought(self, turn: int, thought: Thought) -> None:
        self.logger.info(f"Thought #{turn}: {thought.text}")
        self.logger.info(f"Action #{turn}: {thought.action.describe()}")

    def log_observation(self, turn: int, observation: Observation) -> None:
        self.logger.info(f"Observation #{turn}: {observation.text}")
