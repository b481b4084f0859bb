"""Tool invocation gateway: approval policy, approval decisions and tool dispatch."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field

from deckhand.config import ApprovalConfig
from deckhand.events import EventChannel, EventType
from deckhand.exceptions import ToolError
from deckhand.logging import get_logger
from deckhand.thread import ApprovalState, ToolCall
from deckhand.tools.registry import Tool, ToolContext, ToolRegistry, ToolResult

log = get_logger(__name__)


class ApprovalMode(str, Enum):
    """How a tool call is authorized."""

    AUTO = "auto"
    ASK = "ask"
    DENY = "deny"


class GatewayDecision(str, Enum):
    """Outcome of authorizing one tool call."""

    EXECUTE = "execute"
    DEFER = "defer"
    REJECT = "reject"


class ApprovalPolicy(BaseModel):
    """Per-tool approval modes.

    Lookup order: explicit entry for the tool name, then the tool's declared
    default mode, then ``default``, then ``auto``.
    """

    modes: dict[str, ApprovalMode] = Field(default_factory=dict)
    default: ApprovalMode | None = None

    @classmethod
    def from_config(cls, config: ApprovalConfig) -> "ApprovalPolicy":
        return cls(
            modes={name: ApprovalMode(mode) for name, mode in config.tools.items()},
            default=ApprovalMode(config.default),
        )

    def resolve(self, tool_name: str, tool: Tool | None = None) -> ApprovalMode:
        explicit = self.modes.get(tool_name)
        if explicit is not None:
            return explicit
        declared = getattr(tool, "approval_mode", None) if tool is not None else None
        if declared:
            return ApprovalMode(declared)
        return self.default or ApprovalMode.AUTO


class ApprovalDecision(BaseModel):
    """A human decision for one pending tool call."""

    tool_call_id: str
    decision: Literal["approve", "reject"]
    edited_arguments: dict[str, Any] | None = None
    reason: str | None = None

    @classmethod
    def approve(cls, tool_call_id: str, edited_arguments: dict[str, Any] | None = None) -> "ApprovalDecision":
        return cls(tool_call_id=tool_call_id, decision="approve", edited_arguments=edited_arguments)

    @classmethod
    def reject(cls, tool_call_id: str, reason: str | None = None) -> "ApprovalDecision":
        return cls(tool_call_id=tool_call_id, decision="reject", reason=reason)


ApprovalHandler = Callable[[ToolCall], Awaitable[ApprovalDecision]]
ContextFactory = Callable[[ToolCall], ToolContext]


@dataclass
class StepDispatch:
    """Outcome of routing one step's tool calls through the gateway."""

    results: dict[str, ToolResult] = field(default_factory=dict)
    deferred: list[ToolCall] = field(default_factory=list)

    @property
    def suspended(self) -> bool:
        return bool(self.deferred)


def rejection_result(call: ToolCall, reason: str | None = None) -> ToolResult:
    """Synthesized result for a rejected tool call."""
    detail = f": {reason}" if reason else ""
    return ToolResult(
        success=False,
        error=f"Tool call '{call.name}' was rejected{detail}. Do not retry it unchanged.",
    )


def apply_decision(call: ToolCall, decision: ApprovalDecision) -> None:
    """Move a pending call to its final approval state."""
    if decision.decision == "approve":
        call.approve()
        if decision.edited_arguments is not None:
            call.arguments = dict(decision.edited_arguments)
    else:
        call.reject(decision.reason)


class ToolGateway:
    """Decides whether each tool call runs, and runs the ones that may."""

    def __init__(
        self,
        registry: ToolRegistry,
        policy: ApprovalPolicy | None = None,
        handler: ApprovalHandler | None = None,
        nested: bool = False,
    ):
        self.registry = registry
        self.policy = policy or ApprovalPolicy()
        self.handler = handler
        # Nested invocations cannot suspend, so "ask" without a handler is rejected there.
        self.nested = nested

    def authorize(self, call: ToolCall) -> GatewayDecision:
        """Resolve the approval mode for a call and mark its approval state."""
        mode = self.policy.resolve(call.name, self.registry.find(call.name))
        if mode is ApprovalMode.DENY:
            call.reject("denied by policy")
            log.info("Tool call denied by policy", tool=call.name, tool_call_id=call.id)
            return GatewayDecision.REJECT
        if mode is ApprovalMode.ASK:
            call.mark_pending()
            return GatewayDecision.DEFER
        call.mark_auto()
        return GatewayDecision.EXECUTE

    async def request_decision(self, call: ToolCall, channel: EventChannel) -> ApprovalDecision:
        """Ask the in-process handler about one pending call."""
        channel.emit(EventType.APPROVAL_REQUESTED, tool_calls=[call.to_dict()])
        if self.handler is None:
            decision = ApprovalDecision.reject(call.id, "no approval handler available")
        else:
            decision = await self.handler(call)
            if decision.tool_call_id != call.id:
                decision = decision.model_copy(update={"tool_call_id": call.id})
        channel.emit(
            EventType.APPROVAL_RESPONSE,
            tool_call_id=call.id,
            decision=decision.decision,
            edited=decision.edited_arguments is not None,
        )
        return decision

    async def execute(
        self,
        call: ToolCall,
        context: ToolContext | None,
        channel: EventChannel,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute one authorized call, recording start/end events and timing."""
        channel.emit(
            EventType.TOOL_CALL_START,
            tool_call_id=call.id,
            name=call.name,
            arguments=call.arguments,
        )
        started = time.perf_counter()
        try:
            result = await self.registry.execute(call.name, call.arguments, context, abort_event)
        except ToolError as e:
            result = ToolResult(success=False, error=str(e))
        duration_ms = int((time.perf_counter() - started) * 1000)
        channel.emit(
            EventType.TOOL_CALL_END,
            tool_call_id=call.id,
            name=call.name,
            success=result.success,
            duration_ms=duration_ms,
            error=result.error,
        )
        return result

    async def dispatch(
        self,
        calls: list[ToolCall],
        make_context: ContextFactory,
        channel: EventChannel,
        abort_event: asyncio.Event | None = None,
    ) -> StepDispatch:
        """Authorize every call of a step, then run the executable ones concurrently.

        Calls already decided (approved or rejected on resume) are not
        re-authorized. Returns results keyed by call id plus the calls that
        still need a human decision.
        """
        outcome = StepDispatch()
        runnable: list[ToolCall] = []

        for call in calls:
            if call.approval is ApprovalState.REJECTED:
                outcome.results[call.id] = rejection_result(call, call.rejection_reason)
                continue
            if call.approval in (ApprovalState.APPROVED, ApprovalState.AUTO):
                runnable.append(call)
                continue

            decision = self.authorize(call) if call.approval is None else GatewayDecision.DEFER
            if decision is GatewayDecision.REJECT:
                outcome.results[call.id] = rejection_result(call, call.rejection_reason)
            elif decision is GatewayDecision.EXECUTE:
                runnable.append(call)
            elif self.handler is not None or self.nested:
                human = await self.request_decision(call, channel)
                apply_decision(call, human)
                if call.approval is ApprovalState.APPROVED:
                    runnable.append(call)
                else:
                    outcome.results[call.id] = rejection_result(call, call.rejection_reason)
            else:
                outcome.deferred.append(call)

        if runnable:
            results = await asyncio.gather(
                *(self.execute(call, make_context(call), channel, abort_event) for call in runnable)
            )
            for call, result in zip(runnable, results):
                outcome.results[call.id] = result

        ordered = {call.id: outcome.results[call.id] for call in calls if call.id in outcome.results}
        outcome.results = ordered
        return outcome
