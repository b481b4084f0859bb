"""Tool system for Deckhand."""

from deckhand.tools.files import LsTool, ReadFileTool, WriteFileTool
from deckhand.tools.registry import Tool, ToolContext, ToolRegistry, ToolResult
from deckhand.tools.subagent import GENERAL_PURPOSE, SubagentSpec, TaskTool
from deckhand.tools.todo import TodoTool

__all__ = [
    "GENERAL_PURPOSE",
    "LsTool",
    "ReadFileTool",
    "SubagentSpec",
    "TaskTool",
    "TodoTool",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "WriteFileTool",
]
