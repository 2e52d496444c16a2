"""
Stream output aggregation.

A streaming step emits a finite, ordered sequence of partial outputs.
StreamOutputAggregator folds that sequence, in emission order, into one
terminal output with a caller-supplied reducer. An aggregator is
single-use: build a fresh one (and a fresh seed) for every step.

``merge_message_chunks`` is the reducer for message-style output. It
never joins across a speaker change or an explicit boundary.
"""

import copy
import logging
from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from stepagent.types import MessageSegment, StreamChunk

logger = logging.getLogger(__name__)

S = TypeVar("S")
O = TypeVar("O")  # noqa: E741


class StreamOutputAggregator(Generic[S, O]):
    """Folds partial outputs into a final output."""

    def __init__(self, initial: O, reducer: Callable[[O, S], O]):
        if reducer is None:
            raise ValueError("Reducer cannot be None")
        self._initial = initial
        self._reducer = reducer
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def aggregate(self, stream: Iterable[S]) -> O:
        """
        Consume the whole stream and return the folded output.

        Raises:
            RuntimeError: if this aggregator was already used
        """
        if self._consumed:
            raise RuntimeError("StreamOutputAggregator is single-use; create a new one per step")
        self._consumed = True

        output = self._initial
        count = 0
        for partial in stream:
            output = self._reducer(output, partial)
            count += 1
        logger.debug(f"Aggregated {count} stream chunk(s)")
        return output


def merge_message_chunks(segments: list[MessageSegment], chunk: StreamChunk) -> list[MessageSegment]:
    """
    Append a chunk to the segment list.

    Contiguous chunks from the same role and name are concatenated; a
    change of speaker or a boundary chunk opens a new segment.
    """
    if segments:
        last = segments[-1]
        if not chunk.boundary and last.role == chunk.role and last.name == chunk.name:
            merged = MessageSegment(
                role=last.role,
                content=last.content + chunk.content,
                name=last.name,
                metadata={**last.metadata, **chunk.metadata},
            )
            return [*segments[:-1], merged]

    return [
        *segments,
        MessageSegment(
            role=chunk.role,
            content=chunk.content,
            name=chunk.name,
            metadata=copy.copy(chunk.metadata),
        ),
    ]


def message_aggregator() -> "StreamOutputAggregator[StreamChunk, list[MessageSegment]]":
    """A fresh aggregator that merges chunks into message segments."""
    return StreamOutputAggregator([], merge_message_chunks)


def text_aggregator() -> "StreamOutputAggregator[StreamChunk, str]":
    """A fresh aggregator that concatenates chunk text."""
    return StreamOutputAggregator("", lambda text, chunk: text + chunk.content)
