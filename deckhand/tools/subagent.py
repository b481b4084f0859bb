"""Task tool for delegating work to nested subagent invocations."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from deckhand.exceptions import SubagentDepthError
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolContext, ToolResult

if TYPE_CHECKING:
    from deckhand.gateway import ApprovalPolicy

log = get_logger(__name__)

GENERAL_PURPOSE = "general-purpose"
GENERAL_PURPOSE_DESCRIPTION = (
    "General-purpose agent for researching complex questions and executing "
    "multi-step tasks. It has the same tools as the main agent."
)
DEFAULT_SUBAGENT_MAX_STEPS = 50


@dataclass
class SubagentSpec:
    """A named subagent reachable through the ``task`` tool.

    ``tools`` of None means the parent's tools. The approval policy is
    ``approval`` when given, the parent's policy only with ``inherit_approval``,
    otherwise an empty policy.
    """

    name: str
    description: str
    system_prompt: str | None = None
    tools: list[Tool] | None = None
    approval: "ApprovalPolicy | None" = None
    inherit_approval: bool = False
    max_steps: int | None = DEFAULT_SUBAGENT_MAX_STEPS


class TaskTool(Tool):
    """Launch a subagent to handle a self-contained task."""

    name = "task"
    parameters = {
        "type": "object",
        "properties": {
            "description": {
                "type": "string",
                "description": "The task to execute with the selected agent",
            },
            "subagent_type": {
                "type": "string",
                "description": "Name of the agent to use",
            },
        },
        "required": ["description", "subagent_type"],
    }
    timeout_seconds = 1800.0

    def __init__(self, subagents: list[SubagentSpec] | None = None, include_general_purpose: bool = True):
        self.specs: dict[str, SubagentSpec] = {}
        if include_general_purpose:
            self.specs[GENERAL_PURPOSE] = SubagentSpec(
                name=GENERAL_PURPOSE,
                description=GENERAL_PURPOSE_DESCRIPTION,
            )
        for spec in subagents or []:
            self.specs[spec.name] = spec

        available = "\n".join(f"- {spec.name}: {spec.description}" for spec in self.specs.values())
        self.description = (
            "Launch a short-lived subagent to handle a complex, self-contained task "
            "in an isolated context. The subagent returns a single final report.\n\n"
            f"Available agent types:\n{available}"
        )

    async def execute(self, description: str, subagent_type: str, **kwargs: Any) -> ToolResult:
        context: ToolContext | None = kwargs.get("_context")
        spec = self.specs.get(subagent_type)
        if spec is None:
            allowed = ", ".join(f"`{name}`" for name in self.specs)
            return ToolResult(
                success=False,
                error=f"Invoked agent of type {subagent_type}, the only allowed types are {allowed}",
            )
        if context is None or context.engine is None:
            return ToolResult(success=False, error="Subagents are unavailable outside an engine run")

        try:
            result = await context.engine.run_subagent(spec, description, context)
        except SubagentDepthError as e:
            log.warning("Subagent depth limit reached", subagent=spec.name, depth=e.depth)
            return ToolResult(success=False, error=str(e))

        text = result.text.strip() or f"Subagent '{spec.name}' finished without a report."
        return ToolResult(success=True, content=text)
