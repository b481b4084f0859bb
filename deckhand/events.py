"""Ordered progress events and the per-invocation event channel."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator


class EventType:
    """Event type tags."""

    CHECKPOINT_LOADED = "checkpoint-loaded"
    TEXT = "text"
    TOOL_CALL_START = "tool-call-start"
    TOOL_CALL_END = "tool-call-end"
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RESPONSE = "approval-response"
    CHECKPOINT_SAVED = "checkpoint-saved"
    TODOS_CHANGED = "todos-changed"
    SUBAGENT_START = "subagent-start"
    SUBAGENT_FINISH = "subagent-finish"
    WARNING = "warning"
    ERROR = "error"
    DONE = "done"

    TERMINAL = frozenset({ERROR, DONE})


@dataclass
class Event:
    """A single progress event."""

    type: str
    seq: int
    thread_id: str
    data: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    depth: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.type in EventType.TERMINAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "seq": self.seq,
            "thread_id": self.thread_id,
            "data": self.data,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "timestamp": self.timestamp,
        }


_CLOSED = object()


class EventChannel:
    """Totally ordered event queue owned by one invocation.

    The producer calls ``emit``; the caller consumes lazily by iterating.
    Sequence numbers start at 1 and increase by one per emitted event.
    """

    def __init__(self, thread_id: str, parent_id: str | None = None, depth: int = 0):
        self.thread_id = thread_id
        self.parent_id = parent_id
        self.depth = depth
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._seq = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        return self._seq

    def emit(self, event_type: str, **data: Any) -> Event | None:
        """Append a new event; ignored once the channel is closed."""
        if self._closed:
            return None
        self._seq += 1
        event = Event(
            type=event_type,
            seq=self._seq,
            thread_id=self.thread_id,
            data=data,
            parent_id=self.parent_id,
            depth=self.depth,
        )
        self._queue.put_nowait(event)
        return event

    def forward(self, event: Event, parent_id: str) -> Event | None:
        """Re-emit a child invocation event under this channel's numbering."""
        if self._closed:
            return None
        self._seq += 1
        forwarded = Event(
            type=event.type,
            seq=self._seq,
            thread_id=event.thread_id,
            data=dict(event.data),
            parent_id=event.parent_id or parent_id,
            depth=event.depth,
            timestamp=event.timestamp,
        )
        self._queue.put_nowait(forwarded)
        return forwarded

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
