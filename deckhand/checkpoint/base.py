"""Checkpoint record and the abstract checkpoint store."""

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from deckhand.thread import Message, Thread, TodoItem, ToolCall


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_thread_id(thread_id: str) -> str:
    """Make a thread id safe for use as a file name or key segment.

    Ids that are already safe pass through unchanged. Others get a short
    sha256 suffix so two ids never share a sanitized name.
    """
    raw = str(thread_id)
    safe = _UNSAFE_ID_CHARS.sub("_", raw)
    if safe == raw:
        return safe
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]
    return f"{safe}-{digest}"


@dataclass
class Checkpoint:
    """Serialized snapshot of a thread at a step boundary."""

    thread_id: str
    step: int = 0
    messages: list[dict[str, Any]] = field(default_factory=list)
    todos: list[dict[str, Any]] = field(default_factory=list)
    files: dict[str, str] = field(default_factory=dict)
    pending_approvals: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def from_thread(cls, thread: Thread, created_at: str | None = None) -> "Checkpoint":
        return cls(
            thread_id=thread.id,
            step=thread.step,
            messages=[msg.to_dict() for msg in thread.messages],
            todos=[todo.to_dict() for todo in thread.todos],
            files=dict(thread.files),
            pending_approvals=[call.to_dict() for call in thread.pending_approvals],
            created_at=created_at or _utcnow_iso(),
        )

    def to_thread(self) -> Thread:
        return Thread(
            id=self.thread_id,
            messages=[Message.from_dict(msg) for msg in self.messages],
            todos=[TodoItem.from_dict(todo) for todo in self.todos],
            step=self.step,
            files=dict(self.files),
            pending_approvals=[ToolCall.from_dict(call) for call in self.pending_approvals],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "thread_id": self.thread_id,
            "step": self.step,
            "messages": self.messages,
            "todos": self.todos,
            "files": self.files,
            "pending_approvals": self.pending_approvals,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        """Create from dictionary."""
        return cls(
            thread_id=str(data["thread_id"]),
            step=int(data.get("step", 0)),
            messages=list(data.get("messages", [])),
            todos=list(data.get("todos", [])),
            files=dict(data.get("files", {})),
            pending_approvals=list(data.get("pending_approvals", [])),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
        )


class CheckpointStore(ABC):
    """Keyed persistence of one checkpoint per thread id.

    Storage failures raise ``CheckpointIOError``.
    """

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        """Save (overwrite) the checkpoint for ``checkpoint.thread_id``."""

    @abstractmethod
    async def load(self, thread_id: str) -> Checkpoint | None:
        """Load the checkpoint for a thread, or None if none exists."""

    @abstractmethod
    async def list(self) -> list[str]:
        """List thread ids that have a checkpoint."""

    @abstractmethod
    async def delete(self, thread_id: str) -> bool:
        """Delete a checkpoint; returns True if one existed."""

    async def exists(self, thread_id: str) -> bool:
        return await self.load(thread_id) is not None

    async def close(self) -> None:
        return None
