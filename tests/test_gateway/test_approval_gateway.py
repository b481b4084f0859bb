import asyncio
from typing import Any

import pytest

from deckhand.config import ApprovalConfig
from deckhand.events import EventChannel, EventType
from deckhand.exceptions import ApprovalStateError
from deckhand.gateway import (
    ApprovalDecision,
    ApprovalMode,
    ApprovalPolicy,
    GatewayDecision,
    ToolGateway,
    apply_decision,
)
from deckhand.thread import ApprovalState, ToolCall
from deckhand.tools.registry import Tool, ToolContext, ToolRegistry, ToolResult


class DummyTool(Tool):
    description = "Dummy"
    parameters = {"type": "object", "properties": {}, "required": []}

    def __init__(self, name: str, approval_mode: str | None = None):
        self.name = name
        self.approval_mode = approval_mode
        self.runs = 0

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.runs += 1
        return ToolResult(success=True, content=f"{self.name} ok")


def make_context(call: ToolCall) -> ToolContext:
    return ToolContext(thread_id="t", tool_call_id=call.id, step=0)


def drain(channel: EventChannel) -> list:
    events = []
    while not channel._queue.empty():
        events.append(channel._queue.get_nowait())
    return events


def test_policy_lookup_prefers_explicit_then_tool_default_then_policy_default():
    policy = ApprovalPolicy(modes={"explicit": ApprovalMode.DENY}, default=ApprovalMode.ASK)

    assert policy.resolve("explicit", DummyTool("explicit", approval_mode="auto")) is ApprovalMode.DENY
    assert policy.resolve("declared", DummyTool("declared", approval_mode="auto")) is ApprovalMode.AUTO
    assert policy.resolve("other", DummyTool("other")) is ApprovalMode.ASK
    assert ApprovalPolicy().resolve("anything") is ApprovalMode.AUTO


def test_policy_from_config():
    policy = ApprovalPolicy.from_config(ApprovalConfig(default="ask", tools={"ls": "auto"}))

    assert policy.resolve("ls") is ApprovalMode.AUTO
    assert policy.resolve("write_file") is ApprovalMode.ASK


def test_authorize_marks_approval_state_per_mode():
    registry = ToolRegistry([DummyTool("a"), DummyTool("b"), DummyTool("c")])
    gateway = ToolGateway(
        registry,
        ApprovalPolicy(modes={"a": ApprovalMode.AUTO, "b": ApprovalMode.ASK, "c": ApprovalMode.DENY}),
    )
    auto, ask, deny = ToolCall(id="1", name="a"), ToolCall(id="2", name="b"), ToolCall(id="3", name="c")

    assert gateway.authorize(auto) is GatewayDecision.EXECUTE
    assert gateway.authorize(ask) is GatewayDecision.DEFER
    assert gateway.authorize(deny) is GatewayDecision.REJECT
    assert auto.approval is ApprovalState.AUTO
    assert ask.approval is ApprovalState.PENDING
    assert deny.approval is ApprovalState.REJECTED


def test_approval_transitions_happen_once():
    call = ToolCall(id="1", name="a")
    call.mark_pending()
    apply_decision(call, ApprovalDecision.approve("1", edited_arguments={"x": 1}))

    assert call.approval is ApprovalState.APPROVED
    assert call.arguments == {"x": 1}
    with pytest.raises(ApprovalStateError):
        call.reject()
    with pytest.raises(ApprovalStateError):
        call.approve()

    auto = ToolCall(id="2", name="a")
    auto.mark_auto()
    with pytest.raises(ApprovalStateError):
        auto.mark_pending()


@pytest.mark.asyncio
async def test_dispatch_executes_auto_defers_ask_and_rejects_deny():
    auto_tool, ask_tool, deny_tool = DummyTool("a"), DummyTool("b"), DummyTool("c")
    gateway = ToolGateway(
        ToolRegistry([auto_tool, ask_tool, deny_tool]),
        ApprovalPolicy(modes={"b": ApprovalMode.ASK, "c": ApprovalMode.DENY}),
    )
    channel = EventChannel("t")
    calls = [ToolCall(id="1", name="a"), ToolCall(id="2", name="b"), ToolCall(id="3", name="c")]

    outcome = await gateway.dispatch(calls, make_context, channel)

    assert outcome.suspended
    assert [c.id for c in outcome.deferred] == ["2"]
    assert list(outcome.results) == ["1", "3"]
    assert outcome.results["1"].content == "a ok"
    assert outcome.results["3"].success is False
    assert "denied by policy" in outcome.results["3"].error
    assert (auto_tool.runs, ask_tool.runs, deny_tool.runs) == (1, 0, 0)

    types = [e.type for e in drain(channel)]
    assert types == [EventType.TOOL_CALL_START, EventType.TOOL_CALL_END]


@pytest.mark.asyncio
async def test_dispatch_uses_handler_decision_for_ask():
    tool = DummyTool("b")
    decisions: list[str] = []

    async def handler(call: ToolCall) -> ApprovalDecision:
        decisions.append(call.id)
        return ApprovalDecision.reject(call.id, "not today")

    gateway = ToolGateway(ToolRegistry([tool]), ApprovalPolicy(default=ApprovalMode.ASK), handler=handler)
    channel = EventChannel("t")

    outcome = await gateway.dispatch([ToolCall(id="9", name="b")], make_context, channel)

    assert decisions == ["9"]
    assert not outcome.suspended
    assert "not today" in outcome.results["9"].error
    assert tool.runs == 0
    events = drain(channel)
    assert [e.type for e in events] == [EventType.APPROVAL_REQUESTED, EventType.APPROVAL_RESPONSE]
    assert events[1].data["decision"] == "reject"


@pytest.mark.asyncio
async def test_nested_gateway_rejects_ask_without_handler():
    tool = DummyTool("b")
    gateway = ToolGateway(ToolRegistry([tool]), ApprovalPolicy(default=ApprovalMode.ASK), nested=True)

    outcome = await gateway.dispatch([ToolCall(id="1", name="b")], make_context, EventChannel("t"))

    assert not outcome.suspended
    assert outcome.results["1"].success is False
    assert tool.runs == 0


@pytest.mark.asyncio
async def test_already_decided_calls_are_not_reauthorized():
    tool = DummyTool("b")
    gateway = ToolGateway(ToolRegistry([tool]), ApprovalPolicy(default=ApprovalMode.ASK))
    approved = ToolCall(id="1", name="b", approval=ApprovalState.APPROVED)
    rejected = ToolCall(id="2", name="b", approval=ApprovalState.REJECTED)

    outcome = await gateway.dispatch([approved, rejected], make_context, EventChannel("t"))

    assert tool.runs == 1
    assert outcome.results["1"].success is True
    assert outcome.results["2"].success is False


@pytest.mark.asyncio
async def test_execute_records_timing_and_failure():
    class Exploding(Tool):
        name = "boom"
        description = "Explodes"
        parameters = {"type": "object", "properties": {}, "required": []}

        async def execute(self, **kwargs: Any) -> ToolResult:
            await asyncio.sleep(0)
            raise ValueError("bad input")

    gateway = ToolGateway(ToolRegistry([Exploding()]))
    channel = EventChannel("t")
    call = ToolCall(id="1", name="boom")

    result = await gateway.execute(call, make_context(call), channel)

    assert result.success is False
    assert "bad input" in result.error
    end = drain(channel)[-1]
    assert end.type == EventType.TOOL_CALL_END
    assert end.data["success"] is False
    assert end.data["duration_ms"] >= 0
