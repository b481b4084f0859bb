"""Todo tool for per-thread task planning."""

from typing import Any

from deckhand.logging import get_logger
from deckhand.thread import TODO_STATUSES, TodoItem
from deckhand.tools.registry import Tool, ToolContext, ToolResult

log = get_logger(__name__)

MAX_TODO_CONTENT_CHARS = 100


class TodoTool(Tool):
    """Maintain the thread's structured task list."""

    name = "write_todos"
    description = (
        "Manage and plan tasks using a structured todo list. Use it for complex "
        "multi-step tasks (3+ steps), to capture new requirements, to mark the task "
        "you are starting as in_progress (only one at a time) and to mark tasks "
        "completed immediately. Task states: pending, in_progress, completed, cancelled. "
        "When merge=true, items are merged with existing todos by id. "
        "When merge=false, the given todos replace the whole list."
    )
    parameters = {
        "type": "object",
        "properties": {
            "todos": {
                "type": "array",
                "description": "Todo items to write.",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string", "description": "Unique identifier"},
                        "content": {
                            "type": "string",
                            "description": f"Description (max {MAX_TODO_CONTENT_CHARS} chars)",
                        },
                        "status": {"type": "string", "enum": list(TODO_STATUSES)},
                    },
                    "required": ["id", "content", "status"],
                },
            },
            "merge": {
                "type": "boolean",
                "description": "Merge with existing todos by id (true) or replace all (false).",
            },
        },
        "required": ["todos"],
    }
    timeout_seconds = 10.0

    @staticmethod
    def _parse_items(raw_items: Any) -> list[TodoItem]:
        if not isinstance(raw_items, list) or not raw_items:
            raise ValueError("'todos' must be a non-empty list")
        items: list[TodoItem] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                raise ValueError("Each todo must be an object with id, content and status")
            todo_id = str(raw.get("id", "")).strip()
            content = str(raw.get("content", "")).strip()
            status = str(raw.get("status", "pending")).strip()
            if not todo_id:
                raise ValueError("Todo id must not be empty")
            if len(content) > MAX_TODO_CONTENT_CHARS:
                raise ValueError(
                    f"Todo '{todo_id}' content exceeds {MAX_TODO_CONTENT_CHARS} characters"
                )
            if status not in TODO_STATUSES:
                raise ValueError(f"Todo '{todo_id}' has invalid status: {status}")
            items.append(TodoItem(id=todo_id, content=content, status=status))
        return items

    @staticmethod
    def merge(existing: list[TodoItem], updates: list[TodoItem]) -> list[TodoItem]:
        """Merge by id, keeping the position of existing items."""
        merged: dict[str, TodoItem] = {item.id: item for item in existing}
        for item in updates:
            merged[item.id] = item
        return list(merged.values())

    @staticmethod
    def format_list(todos: list[TodoItem]) -> str:
        return "\n".join(f"- [{t.status}] {t.id}: {t.content}" for t in todos)

    async def execute(self, todos: Any = None, merge: bool = True, **kwargs: Any) -> ToolResult:
        context: ToolContext | None = kwargs.get("_context")
        try:
            items = self._parse_items(todos)
        except ValueError as e:
            return ToolResult(success=False, error=str(e))

        current = list(context.todos) if context is not None else []
        result = self.merge(current, items) if merge else items
        log.debug("Todos written", count=len(result), merge=merge)
        return ToolResult(
            success=True,
            content=f"Todo list updated successfully.\n\nCurrent todos:\n{self.format_list(result)}",
            updates={"todos": [item.to_dict() for item in result]},
        )
