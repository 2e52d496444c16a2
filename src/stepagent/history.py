"""
Append-only run logs.

ActionHistory records every action the agent executed together with its
result. ToolCallTracker records every tool call made through the
ToolExecutor. Both are appended in completion order, which under
parallel tool execution is not necessarily submission order, and both
are cleared when the agent state is reset.

Neither log owns a persistence format; wrap them in a store of your
choice if runs must survive the process.
"""

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from stepagent.types import Action, ActionResult


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ActionRecord:
    """One executed action and its result."""
    action: Action
    result: ActionResult
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.describe(),
            "kind": self.action.kind.value,
            "success": self.result.success,
            "error": str(self.result.error) if self.result.error else None,
            "timestamp": self.timestamp.isoformat(),
        }


class ActionHistory:
    """Append-only log of executed actions."""

    def __init__(self) -> None:
        self._records: list[ActionRecord] = []
        self._lock = threading.Lock()

    def append(self, action: Action, result: ActionResult) -> ActionRecord:
        record = ActionRecord(action=action, result=result)
        with self._lock:
            self._records.append(record)
        return record

    def last(self) -> ActionRecord | None:
        with self._lock:
            return self._records[-1] if self._records else None

    def find(self, predicate: Callable[[ActionRecord], bool]) -> list[ActionRecord]:
        return [r for r in self.records if predicate(r)]

    @property
    def records(self) -> list[ActionRecord]:
        """Snapshot of the records."""
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __iter__(self) -> Iterator[ActionRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass
class ToolCallRecord:
    """One completed tool call."""
    call_id: str
    tool_name: str
    input: Any
    started_at: datetime
    ended_at: datetime
    output: Any = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def duration_ms(self) -> float:
        return (self.ended_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "input": self.input,
            "output": self.output,
            "error": str(self.error) if self.error else None,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
        }


class ToolCallTracker:
    """Call id -> ToolCallRecord, iterated in completion order."""

    def __init__(self) -> None:
        self._records: dict[str, ToolCallRecord] = {}
        self._lock = threading.Lock()

    def track(self, record: ToolCallRecord) -> None:
        with self._lock:
            self._records[record.call_id] = record

    def get(self, call_id: str) -> ToolCallRecord | None:
        with self._lock:
            return self._records.get(call_id)

    def find(self, predicate: Callable[[ToolCallRecord], bool]) -> list[ToolCallRecord]:
        return [r for r in self.records if predicate(r)]

    def find_by_tool(self, tool_name: str) -> list[ToolCallRecord]:
        return self.find(lambda r: r.tool_name == tool_name)

    def merge(self, other: "ToolCallTracker") -> None:
        for record in other.records:
            self.track(record)

    @property
    def records(self) -> list[ToolCallRecord]:
        with self._lock:
            return list(self._records.values())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._records
