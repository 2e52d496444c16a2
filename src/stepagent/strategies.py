"""
Fallback and loop-control strategies.

A fallback strategy is invoked when a step raises. It either resolves
the failure locally by retrying the step, or escalates: it classifies
the error onto the agent state and re-raises it as AgentExecutionError.

A loop-control strategy decides whether the run loop performs another
iteration. It is a pure function of the agent state, so time-boxed or
budget-boxed policies can be swapped in without touching the loop.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from stepagent.errors import AgentExecutionError
from stepagent.state import AgentState

if TYPE_CHECKING:
    from stepagent.agent import BaseAgent

logger = logging.getLogger(__name__)


class FallbackStrategy(ABC):
    """Policy applied when a step fails."""

    @abstractmethod
    def fallback(self, agent: BaseAgent, input: Any, cause: Exception) -> Any:
        """Return a replacement step output or raise AgentExecutionError."""
        ...


class FailFastFallback(FallbackStrategy):
    """Record the error on the agent state and re-raise it."""

    def fallback(self, agent: BaseAgent, input: Any, cause: Exception) -> Any:
        status = agent.state.record_error(cause)
        logger.debug(f"Agent {agent.name} failing fast with status {status.value}: {cause}")
        if isinstance(cause, AgentExecutionError):
            raise cause
        raise AgentExecutionError(f"Agent {agent.name} execute fail: {cause}") from cause


class RetryFallback(FallbackStrategy):
    """
    Re-run the failed step until the shared retry budget is spent.

    The budget is ``agent.state.retry_count``, not a local counter, so
    nested fallback chains see one consistent budget. A retried step
    that fails again comes back through this same strategy.
    """

    def __init__(
        self,
        max_retries: int,
        backoff_seconds: float = 0.0,
        retry_on: Callable[[Exception], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.retry_on = retry_on
        self._sleep = sleep
        self._fail_fast = FailFastFallback()

    def fallback(self, agent: BaseAgent, input: Any, cause: Exception) -> Any:
        state = agent.state
        retryable = self.retry_on is None or self.retry_on(cause)
        if not retryable or state.retry_count >= self.max_retries:
            if retryable:
                logger.warning(f"Failed to retry agent {agent.name} after {self.max_retries} retries")
            return self._fail_fast.fallback(agent, input, cause)

        attempt = state.incr_retry_count()
        logger.info(f"Retrying agent {agent.name} step ({attempt}/{self.max_retries}) after error: {cause}")
        if self.backoff_seconds > 0:
            self._sleep(self.backoff_seconds * attempt)

        try:
            return agent.step(input)
        except Exception as e:
            return self.fallback(agent, input, e)


class LoopControlStrategy(ABC):
    """Decides whether the run loop continues."""

    @abstractmethod
    def should_continue(self, state: AgentState) -> bool:
        ...


class MaxLoopCountControl(LoopControlStrategy):
    """Continue while the run is not finished and under the loop bound."""

    def __init__(self, max_loop_count: int):
        self.max_loop_count = max_loop_count

    def should_continue(self, state: AgentState) -> bool:
        return not state.status.is_finished and state.loop_count < self.max_loop_count


class TimeBoxedLoopControl(MaxLoopCountControl):
    """
    Also stop once the run has used up its wall-clock budget.

    ``clock`` must be on the same timeline as ``AgentState.started_at``
    (``time.monotonic`` by default).
    """

    def __init__(
        self,
        max_loop_count: int,
        max_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(max_loop_count)
        self.max_seconds = max_seconds
        self.clock = clock

    def should_continue(self, state: AgentState) -> bool:
        if not super().should_continue(state):
            return False
        if state.started_at is None:
            return True
        return self.clock() - state.started_at < self.max_seconds


def fallback_from_config(config: Any) -> FallbackStrategy:
    """Build the fallback strategy described by a LoopConfig."""
    if config.max_retries > 0:
        return RetryFallback(config.max_retries, backoff_seconds=config.retry_backoff_seconds)
    return FailFastFallback()
