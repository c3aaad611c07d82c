"""Progress events published by the orchestration loop.

The loop depends on the ProgressSink port only. Publishing is
fire-and-forget: the loop never awaits a sink, and a broken sink never
crashes the run or changes its control flow.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

EVENT_KINDS = frozenset({
    "user_prompt",
    "llm_response",
    "tool_call",
    "tool_result",
    "tool_error",
    "geo_feature",
    "remove_geo_feature",
})

# Out-of-band terminal frames added by the transport, never by the loop
TERMINAL_KINDS = frozenset({"done", "error"})


@dataclass
class ProgressEvent:
    """A typed event for one loop state transition."""

    kind: str
    data: dict[str, Any] = field(default_factory=dict)


class ProgressSink(Protocol):
    def publish(self, event: ProgressEvent) -> None: ...


class NullSink:
    """Discards every event."""

    def publish(self, event: ProgressEvent) -> None:
        return None


class CallbackSink:
    """Forwards events to a plain callable, isolating its errors."""

    def __init__(self, callback: Callable[[ProgressEvent], Any]) -> None:
        self._callback = callback

    def publish(self, event: ProgressEvent) -> None:
        try:
            self._callback(event)
        except Exception:
            logger.exception("Progress callback failed for event %s", event.kind)


class QueueSink:
    """Buffers events in an asyncio.Queue for a transport to drain.

    If the queue is full the event is dropped with a warning (never blocks
    the loop). close() enqueues a None sentinel so consumers can stop.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self.queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=max_queue)

    def publish(self, event: ProgressEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Progress queue full, dropping event: %s", event.kind)

    def close(self) -> None:
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # The sentinel must land or the consumer never stops
            dropped = self.queue.get_nowait()
            logger.warning("Progress queue full, dropping %s to enqueue close sentinel", dropped and dropped.kind)
            self.queue.put_nowait(None)


def safe_publish(sink: ProgressSink | None, kind: str, data: dict[str, Any]) -> None:
    """Publish to a sink without letting sink errors reach the caller."""
    if sink is None:
        return
    try:
        sink.publish(ProgressEvent(kind=kind, data=data))
    except Exception:
        logger.exception("Progress sink %s failed for event %s", type(sink).__name__, kind)


def format_sse(event: str, data: Any) -> str:
    """Frame one named server-sent event carrying a JSON payload."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"
