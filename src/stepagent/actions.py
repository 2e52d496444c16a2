"""
Action execution.

An ActionExecutor runs one Action and returns its ActionResult. Any
failure underneath is surfaced as ActionExecutionError so the step
boundary sees a single error kind.

Two executors are provided:
1. SyncActionExecutor - runs the action on the calling thread
2. PooledActionExecutor - runs the action on a bounded worker pool while
   the caller blocks for the result

The pooled executor never grows an unbounded queue. Admission is
limited to ``threads + queue_depth`` in-flight actions; beyond that a
submission is rejected with ActionRejectedError, which is retryable
through the agent's fallback strategy.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stepagent.errors import ActionExecutionError, ActionRejectedError
from stepagent.history import ActionHistory, ToolCallTracker
from stepagent.tools import ToolContext
from stepagent.types import Action, ActionResult

if TYPE_CHECKING:
    from stepagent.abort import AbortSignal
    from stepagent.tool_executor import ToolExecutor
    from stepagent.tools import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything an action may need while it executes."""
    history: ActionHistory | None = None
    tracker: ToolCallTracker | None = None
    tool_registry: ToolRegistry | None = None
    tool_executor: ToolExecutor | None = None
    abort_signal: AbortSignal | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def tool_context(self) -> ToolContext:
        """Build the context handed to tools run on behalf of this action."""
        return ToolContext(
            registry=self.tool_registry,
            tracker=self.tracker if self.tracker is not None else ToolCallTracker(),
            abort_signal=self.abort_signal,
            metadata=dict(self.metadata),
        )


class ActionExecutor(ABC):
    """Executes one action. Subclasses decide where it runs."""

    def execute(self, context: ActionContext, action: Action) -> ActionResult:
        """
        Execute the action and record it in the context's history.

        Raises:
            ActionExecutionError: wrapping any underlying failure
        """
        try:
            result = self._do_execute(context, action)
        except ActionExecutionError as e:
            self._record(context, action, ActionResult.failed(e))
            raise
        except Exception as e:
            error = ActionExecutionError(f"Action {action.describe()} failed: {e}")
            error.__cause__ = e
            self._record(context, action, ActionResult.failed(error))
            raise error from e

        self._record(context, action, result)
        return result

    @staticmethod
    def _record(context: ActionContext, action: Action, result: ActionResult) -> None:
        if context.history is not None:
            context.history.append(action, result)

    @abstractmethod
    def _do_execute(self, context: ActionContext, action: Action) -> ActionResult:
        ...

    def shutdown(self, wait: bool = True) -> None:  # noqa: B027
        """Release any worker resources. No-op by default."""
        pass


class SyncActionExecutor(ActionExecutor):
    """Runs actions on the calling thread."""

    def _do_execute(self, context: ActionContext, action: Action) -> ActionResult:
        return action.execute(context)


class PooledActionExecutor(ActionExecutor):
    """
    Runs actions on a fixed-size worker pool with a bounded queue.

    The caller blocks until the action completes, so this is a
    synchronous call with asynchronous execution. ``timeout`` bounds the
    wait; exceeding it raises ActionExecutionError caused by TimeoutError,
    which the agent state classifies as TIMEOUT.
    """

    def __init__(
        self,
        threads: int = 4,
        queue_depth: int = 16,
        timeout: float | None = None,
        thread_name_prefix: str = "ActionExecutor",
    ):
        if threads < 1:
            raise ValueError("threads must be >= 1")
        if queue_depth < 0:
            raise ValueError("queue_depth must be >= 0")
        self.threads = threads
        self.queue_depth = queue_depth
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=threads, thread_name_prefix=thread_name_prefix)
        self._slots = threading.BoundedSemaphore(threads + queue_depth)
        self._lock = threading.Lock()
        self._queued = 0
        self._running = 0

    @classmethod
    def from_config(cls, config: Any) -> PooledActionExecutor:
        """Build from an ExecutorConfig."""
        return cls(threads=config.action_threads, queue_depth=config.action_queue_depth)

    @property
    def queue_size(self) -> int:
        """Number of accepted actions waiting for a worker."""
        with self._lock:
            return self._queued

    @property
    def running(self) -> int:
        with self._lock:
            return self._running

    def submit(self, context: ActionContext, action: Action) -> Future[ActionResult]:
        """
        Schedule the action without waiting for it.

        Raises:
            ActionRejectedError: if all worker and queue slots are taken
        """
        if not self._slots.acquire(blocking=False):
            logger.warning(
                f"Action pool saturated ({self.threads} threads, queue depth {self.queue_depth}); "
                f"rejecting {action.describe()}"
            )
            raise ActionRejectedError(
                f"Action {action.describe()} rejected: worker pool and queue are full"
            )

        with self._lock:
            self._queued += 1

        try:
            future = self._pool.submit(self._run, context, action)
        except RuntimeError as e:
            with self._lock:
                self._queued -= 1
            self._slots.release()
            raise ActionExecutionError(f"Action executor is shut down: {e}") from e

        future.add_done_callback(self._on_done)
        return future

    def _run(self, context: ActionContext, action: Action) -> ActionResult:
        with self._lock:
            self._queued -= 1
            self._running += 1
        try:
            return action.execute(context)
        finally:
            with self._lock:
                self._running -= 1
            self._slots.release()

    def _on_done(self, future: Future[ActionResult]) -> None:
        # Cancelled before a worker picked it up.
        if future.cancelled():
            with self._lock:
                self._queued -= 1
            self._slots.release()

    def _do_execute(self, context: ActionContext, action: Action) -> ActionResult:
        future = self.submit(context, action)
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise ActionExecutionError(
                f"Action {action.describe()} timed out after {self.timeout}s"
            ) from e
        except (KeyboardInterrupt, InterruptedError) as e:
            future.cancel()
            raise ActionExecutionError(f"Action {action.describe()} interrupted") from e

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> PooledActionExecutor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()
