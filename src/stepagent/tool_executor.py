"""
Tool execution with tracking, listener hooks and batch dispatch.

Every call made through the ToolExecutor:
1. Checks the abort signal (a tool is never started after an abort)
2. Notifies ``on_input`` listeners
3. Converts text input through the tool's converter (ToolArgumentError)
4. Runs the tool, holding a per-tool lock if it is not concurrency safe
5. Records a ToolCallRecord in the context's tracker on completion
6. Notifies ``on_output`` or ``on_exception`` listeners

Batch execution resolves every requested tool first and fails with
ToolNotFoundError before running anything if a name is unknown. The
resolved calls run in parallel on a bounded pool when every tool is
concurrency safe, and sequentially otherwise. Results come back keyed by
call id in the order the caller asked for them.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from stepagent.errors import (
    AbortError,
    ToolArgumentError,
    ToolExecutionError,
    ToolNotFoundError,
)
from stepagent.history import ToolCallRecord
from stepagent.listeners import ListenerRegistry, ToolExecuteListener
from stepagent.tools import Tool, ToolContext, ToolRegistry
from stepagent.types import ToolCall, ToolResult

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return uuid.uuid4().hex[16:]


@dataclass
class ToolInvocation:
    """A resolved tool call, ready to run."""
    call: ToolCall
    tool: Tool


class BatchResult:
    """Results of a batch, in the order the calls were requested."""

    def __init__(self, results: list[ToolResult]):
        self.results = results
        self.by_id = {r.tool_call_id: r for r in results}

    @property
    def all_success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def call_ids(self) -> list[str]:
        return [r.tool_call_id for r in self.results]

    @property
    def failed(self) -> list[ToolResult]:
        return [r for r in self.results if not r.success]

    def __getitem__(self, call_id: str) -> ToolResult:
        return self.by_id[call_id]

    def __iter__(self) -> Iterator[ToolResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __str__(self) -> str:
        return "\n".join(f"{r.tool_name}: {r.content}" for r in self.results)


class ToolExecutor:
    """Executes tools for an agent."""

    def __init__(self, max_workers: int = 4, serialize_unsafe_tools: bool = True):
        self.max_workers = max_workers
        self.serialize_unsafe_tools = serialize_unsafe_tools
        self.listeners: ListenerRegistry[ToolExecuteListener] = ListenerRegistry()
        self._tool_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: Any) -> ToolExecutor:
        """Build from an ExecutorConfig."""
        return cls(max_workers=config.tool_batch_workers)

    def register_listener(self, listener: ToolExecuteListener) -> None:
        self.listeners.register(listener)

    def unregister_listener(self, listener: ToolExecuteListener) -> None:
        self.listeners.unregister(listener)

    def get_lock(self, tool_name: str) -> threading.Lock:
        """The mutual-exclusion lock for one tool name."""
        with self._locks_guard:
            return self._tool_locks[tool_name]

    def execute(self, context: ToolContext, tool: Tool, input: Any) -> Any:
        """
        Run the tool with typed input and return its typed output.

        Raises:
            ToolExecutionError: if the tool failed
            AbortError: if the context's abort signal already fired
        """
        return self._call(context, tool, input, convert=False)

    def execute_text(self, context: ToolContext, tool: Tool, input: str | dict[str, Any]) -> str:
        """
        Run the tool with raw input (JSON text or an argument map) and
        return text output, using the tool's converter on both sides.

        Raises:
            ToolArgumentError: if input or output conversion failed
            ToolExecutionError: if the tool ran and failed
            AbortError: if the context's abort signal already fired
        """
        return self._call(context, tool, input, convert=True)

    def _call(self, context: ToolContext, tool: Tool, raw_input: Any, convert: bool) -> Any:
        signal = context.abort_signal
        if signal is not None and signal.is_aborted():
            raise signal.reason or AbortError("Aborted")

        call_id = context.call_id or new_call_id()
        if context.call_id != call_id:
            context = context.for_call(call_id)

        self.listeners.notify(lambda listener: listener.on_input(tool, raw_input))
        started_at = datetime.now(UTC)
        output: Any = None
        error: Exception | None = None

        try:
            typed_input = tool.converter.convert_input(tool.name, raw_input) if convert else raw_input
            result = self._run_tool(context, tool, typed_input)
            output = tool.converter.convert_output(tool.name, result) if convert else result
        except (ToolArgumentError, ToolExecutionError, AbortError) as e:
            error = e
            raise
        except Exception as e:
            error = ToolExecutionError(tool.name, str(e))
            raise error from e
        finally:
            context.tracker.track(ToolCallRecord(
                call_id=call_id,
                tool_name=tool.name,
                input=raw_input,
                started_at=started_at,
                ended_at=datetime.now(UTC),
                output=output,
                error=error,
            ))
            if error is not None:
                logger.warning(f"Tool {tool.name} failed (call {call_id}): {error}")
                failure = error
                self.listeners.notify(lambda listener: listener.on_exception(tool, raw_input, failure))

        self.listeners.notify(lambda listener: listener.on_output(tool, raw_input, output))
        return output

    def _run_tool(self, context: ToolContext, tool: Tool, typed_input: Any) -> Any:
        if self.serialize_unsafe_tools and not tool.concurrency_safe:
            with self.get_lock(tool.name):
                return tool.run(context, typed_input)
        return tool.run(context, typed_input)

    def resolve(
        self,
        registry: ToolRegistry,
        calls: Sequence[ToolCall | tuple[str, dict[str, Any]]],
    ) -> list[ToolInvocation]:
        """
        Look up every requested tool.

        Raises:
            ToolNotFoundError: for the first unknown tool name
        """
        invocations: list[ToolInvocation] = []
        for call in calls:
            if not isinstance(call, ToolCall):
                name, arguments = call
                call = ToolCall(id=new_call_id(), name=name, arguments=dict(arguments))
            tool = registry.get(call.name)
            if tool is None:
                raise ToolNotFoundError(call.name)
            invocations.append(ToolInvocation(call=call, tool=tool))
        return invocations

    def execute_batch(
        self,
        context: ToolContext,
        calls: Sequence[ToolCall | tuple[str, dict[str, Any]]],
    ) -> BatchResult:
        """
        Execute several tool calls.

        Per-call failures are captured in the returned results. An abort
        is not a tool failure and propagates.

        Raises:
            ToolNotFoundError: if any requested tool is unregistered,
                before any call is made
            AbortError: if the abort signal fired
        """
        if context.registry is None:
            raise ToolExecutionError("<batch>", "no tool registry in context")

        invocations = self.resolve(context.registry, calls)
        if not invocations:
            return BatchResult([])

        parallel = len(invocations) > 1 and all(inv.tool.concurrency_safe for inv in invocations)
        logger.debug(
            f"Executing batch of {len(invocations)} tool call(s) "
            f"{'in parallel' if parallel else 'sequentially'}"
        )

        if parallel:
            results = self._execute_parallel(context, invocations)
        else:
            results = [self._execute_single(context, inv) for inv in invocations]

        return BatchResult(results)

    def _execute_single(self, context: ToolContext, invocation: ToolInvocation) -> ToolResult:
        call = invocation.call
        try:
            content = self.execute_text(context.for_call(call.id), invocation.tool, call.arguments)
        except AbortError:
            raise
        except (ToolArgumentError, ToolExecutionError) as e:
            return ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                content=f"Error: {e}",
                success=False,
                error=e,
            )
        return ToolResult(tool_call_id=call.id, tool_name=call.name, content=content)

    def _execute_parallel(
        self,
        context: ToolContext,
        invocations: list[ToolInvocation],
    ) -> list[ToolResult]:
        results: list[ToolResult | None] = [None] * len(invocations)
        aborted: AbortError | None = None

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(invocations))) as pool:
            future_to_index = {
                pool.submit(self._execute_single, context, inv): i
                for i, inv in enumerate(invocations)
            }

            for future in as_completed(future_to_index):
                index = future_to_index[future]
                call = invocations[index].call
                try:
                    results[index] = future.result()
                except AbortError as e:
                    aborted = aborted or e
                except Exception as e:
                    results[index] = ToolResult(
                        tool_call_id=call.id,
                        tool_name=call.name,
                        content=f"Error: {e}",
                        success=False,
                        error=e,
                    )

        if aborted is not None:
            raise aborted
        return results  # type: ignore[return-value]
