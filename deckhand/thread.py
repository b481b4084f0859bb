"""Thread, message and tool-call data model."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from deckhand.exceptions import ApprovalStateError


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class ApprovalState(str, Enum):
    """Approval state of a single tool call."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO = "auto"


TODO_STATUSES = ("pending", "in_progress", "completed", "cancelled")


@dataclass
class ToolCall:
    """A tool call requested by the reasoner."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    approval: ApprovalState | None = None
    rejection_reason: str | None = None

    def mark_auto(self) -> None:
        if self.approval is not None:
            raise ApprovalStateError(self.id, self.approval.value, ApprovalState.AUTO.value)
        self.approval = ApprovalState.AUTO

    def mark_pending(self) -> None:
        if self.approval is not None:
            raise ApprovalStateError(self.id, self.approval.value, ApprovalState.PENDING.value)
        self.approval = ApprovalState.PENDING

    def approve(self) -> None:
        """Move pending -> approved (only once)."""
        if self.approval is not ApprovalState.PENDING:
            current = self.approval.value if self.approval else "unset"
            raise ApprovalStateError(self.id, current, ApprovalState.APPROVED.value)
        self.approval = ApprovalState.APPROVED

    def reject(self, reason: str | None = None) -> None:
        """Move pending -> rejected (only once). Unset calls may be rejected directly by policy."""
        if self.approval not in (None, ApprovalState.PENDING):
            raise ApprovalStateError(self.id, self.approval.value, ApprovalState.REJECTED.value)
        self.approval = ApprovalState.REJECTED
        self.rejection_reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "approval": self.approval.value if self.approval else None,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        raw_approval = data.get("approval")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            arguments=dict(data.get("arguments") or {}),
            approval=ApprovalState(raw_approval) if raw_approval else None,
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class Message:
    """A message in the thread history."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    token_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow_iso)

    @property
    def is_summary(self) -> bool:
        return "summary" in self.metadata

    @property
    def eviction(self) -> dict[str, Any] | None:
        record = self.metadata.get("eviction")
        return record if isinstance(record, dict) else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "token_count": self.token_count,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=str(data.get("role", "user")),
            content=str(data.get("content") or ""),
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            token_count=data.get("token_count"),
            metadata=dict(data.get("metadata") or {}),
            timestamp=data.get("timestamp") or _utcnow_iso(),
        )


@dataclass
class TodoItem:
    """A task list entry maintained by the write_todos tool."""

    id: str
    content: str
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "content": self.content, "status": self.status}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TodoItem":
        return cls(
            id=str(data["id"]),
            content=str(data.get("content", "")),
            status=str(data.get("status", "pending")),
        )


@dataclass
class EvictionRecord:
    """Original tool call id -> content backend path."""

    tool_call_id: str
    path: str
    tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {"tool_call_id": self.tool_call_id, "path": self.path, "tokens": self.tokens}


@dataclass
class Thread:
    """One logical conversation/task context."""

    id: str
    messages: list[Message] = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    step: int = 0
    files: dict[str, str] = field(default_factory=dict)
    pending_approvals: list[ToolCall] = field(default_factory=list)
    ephemeral: bool = False

    @classmethod
    def create(cls, thread_id: str | None = None) -> "Thread":
        """Create a thread; without an id the thread is ephemeral and never persisted."""
        if thread_id:
            return cls(id=thread_id)
        return cls(id=f"ephemeral-{uuid.uuid4().hex[:12]}", ephemeral=True)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)

    def pending_call(self, tool_call_id: str) -> ToolCall | None:
        for call in self.pending_approvals:
            if call.id == tool_call_id:
                return call
        return None

    def last_assistant_text(self) -> str:
        for msg in reversed(self.messages):
            if msg.role == "assistant" and not msg.is_summary and msg.content.strip():
                return msg.content
        return ""
