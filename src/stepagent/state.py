"""
Run-scoped agent state.

AgentState is mutated only by the thread driving the agent's loop,
including the recursive retry path, which runs on that same thread.
It is not designed for cross-thread mutation.
"""

import concurrent.futures
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stepagent.errors import AbortError
from stepagent.history import ActionHistory, ToolCallTracker


class RunStatus(Enum):
    """Status of an agent run."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"

    @property
    def is_finished(self) -> bool:
        return self in (
            RunStatus.FINISHED,
            RunStatus.FAILED,
            RunStatus.TIMEOUT,
            RunStatus.INTERRUPTED,
        )


def classify_error(error: BaseException) -> RunStatus:
    """Map an error onto the terminal status it implies."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (TimeoutError, concurrent.futures.TimeoutError)):
            return RunStatus.TIMEOUT
        if isinstance(current, (AbortError, InterruptedError, KeyboardInterrupt)):
            return RunStatus.INTERRUPTED
        current = current.__cause__
    return RunStatus.FAILED


@dataclass
class AgentState:
    """Status, counters, last error and history handles of one agent."""
    status: RunStatus = RunStatus.NOT_STARTED
    loop_count: int = 0
    retry_count: int = 0
    last_error: Exception | None = None
    output: Any = None
    started_at: float | None = None
    history: ActionHistory = field(default_factory=ActionHistory)
    tracker: ToolCallTracker = field(default_factory=ToolCallTracker)

    def start(self) -> None:
        self.status = RunStatus.RUNNING
        self.started_at = time.monotonic()

    def incr_loop_count(self) -> int:
        self.loop_count += 1
        return self.loop_count

    def incr_retry_count(self) -> int:
        self.retry_count += 1
        return self.retry_count

    def record_error(self, error: Exception) -> RunStatus:
        """Store the error and move to the terminal status it implies."""
        self.last_error = error
        self.status = classify_error(error)
        return self.status

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    def reset(self) -> None:
        self.status = RunStatus.NOT_STARTED
        self.loop_count = 0
        self.retry_count = 0
        self.last_error = None
        self.output = None
        self.started_at = None
        self.history.clear()
        self.tracker.clear()
