"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, model_validator

from deckhand.exceptions import ToolExecutionError, ToolNotFoundError
from deckhand.llm import ToolDefinition
from deckhand.logging import get_logger

if TYPE_CHECKING:
    from deckhand.backends import ContentBackend
    from deckhand.events import EventChannel
    from deckhand.thread import TodoItem

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    updates: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def text(self) -> str:
        """Text the reasoner sees for this result."""
        return self.content if self.success else f"Error: {self.error}"


@dataclass
class ToolContext:
    """Runtime context handed to a tool by the engine."""

    thread_id: str
    tool_call_id: str
    step: int
    backend: "ContentBackend | None" = None
    todos: list["TodoItem"] = field(default_factory=list)
    depth: int = 0
    channel: "EventChannel | None" = None
    engine: Any = None


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0
    # Default approval mode when the policy has no explicit entry: auto | ask | deny.
    approval_mode: str | None = None
    # Per-result eviction ceiling in tokens; None uses the context default.
    max_result_tokens: int | None = None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments plus ``_context`` (ToolContext)

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the reasoner."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate required tool arguments.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for name in required:
            if name not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {name}",
                )


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def find(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names in registration order."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for the reasoner."""
        return [tool.get_definition() for tool in self._tools.values()]

    def subset(self, names: list[str] | None) -> "ToolRegistry":
        """Return a registry holding only the named tools (all tools when names is None)."""
        if names is None:
            return ToolRegistry(list(self._tools.values()))
        wanted = set(names)
        return ToolRegistry([tool for name, tool in self._tools.items() if name in wanted])

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled tool task raised", error=str(e))

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))

            execute_task = asyncio.create_task(tool.execute(**arguments, _context=context))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task is not None and abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)
