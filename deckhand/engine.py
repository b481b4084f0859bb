"""Step loop controller: drives the reasoner through bounded reasoning/tool steps."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from deckhand.backends import ContentBackend, StateBackend
from deckhand.checkpoint import Checkpoint, CheckpointStore
from deckhand.config import Config, get_config
from deckhand.context import ContextWindowManager
from deckhand.events import Event, EventChannel, EventType
from deckhand.exceptions import (
    ApprovalError,
    CheckpointIOError,
    DeckhandError,
    ReasonerError,
    SubagentDepthError,
    ToolExecutionError,
)
from deckhand.gateway import (
    ApprovalDecision,
    ApprovalHandler,
    ApprovalPolicy,
    StepDispatch,
    ToolGateway,
    apply_decision,
)
from deckhand.instructions import SUBAGENT_PROMPT, SYSTEM_PROMPT, InstructionLoader
from deckhand.llm import Reasoner
from deckhand.logging import bind_invocation, get_logger
from deckhand.thread import ApprovalState, Message, Thread, TodoItem, ToolCall
from deckhand.tools.files import LsTool, ReadFileTool, WriteFileTool
from deckhand.tools.registry import Tool, ToolContext, ToolRegistry, ToolResult
from deckhand.tools.subagent import SubagentSpec, TaskTool
from deckhand.tools.todo import TodoTool

log = get_logger(__name__)


@dataclass
class StepState:
    """Snapshot handed to a caller-supplied stop predicate after each step."""

    thread_id: str
    step: int
    steps_this_run: int
    messages: list[Message]
    todos: list[TodoItem]
    last_text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


StopPredicate = Callable[[StepState], bool]


@dataclass
class RunResult:
    """Terminal state of one invocation.

    ``status`` is one of ``completed``, ``interrupted``, ``cancelled`` or ``error``.
    """

    thread_id: str
    status: str
    reason: str
    step: int
    text: str = ""
    messages: list[Message] = field(default_factory=list)
    todos: list[TodoItem] = field(default_factory=list)
    pending_approvals: list[ToolCall] = field(default_factory=list)
    error: str | None = None

    @property
    def interrupted(self) -> bool:
        return self.status == "interrupted"


@dataclass
class _Request:
    prompt: str | None = None
    messages: list[Message] = field(default_factory=list)
    thread_id: str | None = None
    thread: Thread | None = None
    resume: list[ApprovalDecision] = field(default_factory=list)
    max_steps: int | None = None
    stop_when: StopPredicate | None = None


class _Finished(Exception):
    """Internal signal carrying the terminal result out of the loop."""

    def __init__(self, result: RunResult):
        super().__init__(result.reason)
        self.result = result


class Invocation:
    """A running (or not yet started) engine invocation.

    Iterate it to consume events lazily; the loop starts on first iteration.
    ``await wait()`` drains the remaining events and returns the RunResult.
    """

    def __init__(
        self,
        engine: "Engine",
        request: _Request,
        channel: EventChannel,
        gateway: ToolGateway,
        depth: int = 0,
    ):
        self.engine = engine
        self.request = request
        self.channel = channel
        self.gateway = gateway
        self.depth = depth
        self.result: RunResult | None = None
        self._cancel_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._drained = False

    @property
    def thread_id(self) -> str:
        return self.channel.thread_id

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation; observed between steps and before tool dispatch."""
        self._cancel_event.set()

    def _start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        try:
            self.result = await self.engine._execute(self)
        finally:
            self.channel.close()

    async def __aiter__(self) -> AsyncIterator[Event]:
        self._start()
        if not self._drained:
            try:
                async for event in self.channel:
                    yield event
                self._drained = True
            finally:
                # A consumer that stops iterating early abandons the run.
                if not self._drained:
                    self.cancel()
        if self._task is not None:
            await self._task

    async def wait(self) -> RunResult:
        """Drain remaining events and return the terminal result."""
        async for _ in self:
            pass
        assert self.result is not None
        return self.result


class Engine:
    """Step loop controller."""

    def __init__(
        self,
        reasoner: Reasoner,
        tools: list[Tool] | ToolRegistry | None = None,
        checkpoints: CheckpointStore | None = None,
        backend: ContentBackend | None = None,
        approval: ApprovalPolicy | None = None,
        approval_handler: ApprovalHandler | None = None,
        subagents: list[SubagentSpec] | None = None,
        system_prompt: str | None = None,
        config: Config | None = None,
        include_builtin_tools: bool = True,
        include_general_purpose: bool = True,
        instructions: InstructionLoader | None = None,
        nested: bool = False,
    ):
        """Initialize the engine.

        Args:
            reasoner: Language-model reasoner
            tools: Extra tools (or a prepared registry)
            checkpoints: Checkpoint store; None disables persistence
            backend: Content backend; defaults to per-thread in-state files
            approval: Approval policy; defaults to the configured policy
            approval_handler: Optional in-process decision callback for "ask" tools
            subagents: Named subagents reachable through the ``task`` tool
            system_prompt: Extra instructions appended to the base system prompt
            config: Configuration override
        """
        self.reasoner = reasoner
        self.config = config or get_config()
        self.checkpoints = checkpoints
        self.backend = backend
        self.policy = approval if approval is not None else ApprovalPolicy.from_config(self.config.approval)
        self.approval_handler = approval_handler
        self.subagents = list(subagents or [])
        self.instructions = instructions or InstructionLoader()
        self.nested = nested
        self.context = ContextWindowManager(
            reasoner=reasoner,
            config=self.config.context,
            instructions=self.instructions,
        )

        if isinstance(tools, ToolRegistry):
            self.registry = tools
        else:
            self.registry = ToolRegistry()
            if include_builtin_tools:
                for builtin in (TodoTool(), LsTool(), ReadFileTool(), WriteFileTool()):
                    self.registry.register(builtin)
            if self.subagents or include_general_purpose:
                self.registry.register(TaskTool(self.subagents, include_general_purpose))
            for tool in tools or []:
                self.registry.register(tool)

        self.system_prompt = self.instructions.compose(SYSTEM_PROMPT, system_prompt)

    def run(
        self,
        prompt: str | None = None,
        *,
        messages: list[Message | dict[str, Any]] | None = None,
        thread_id: str | None = None,
        resume: ApprovalDecision | list[ApprovalDecision] | None = None,
        max_steps: int | None = None,
        stop_when: StopPredicate | None = None,
    ) -> Invocation:
        """Start an invocation; events are produced lazily as the caller iterates."""
        if isinstance(resume, ApprovalDecision):
            resume = [resume]
        request = _Request(
            prompt=prompt,
            messages=[m if isinstance(m, Message) else Message.from_dict(m) for m in messages or []],
            thread_id=thread_id,
            resume=list(resume or []),
            max_steps=max_steps,
            stop_when=stop_when,
        )
        return self._invocation(request)

    def _invocation(
        self,
        request: _Request,
        parent_id: str | None = None,
        depth: int = 0,
    ) -> Invocation:
        thread_id = request.thread.id if request.thread is not None else (request.thread_id or "")
        channel = EventChannel(thread_id or "pending", parent_id=parent_id, depth=depth)
        gateway = ToolGateway(
            self.registry,
            policy=self.policy,
            handler=self.approval_handler,
            nested=self.nested,
        )
        return Invocation(self, request, channel, gateway, depth=depth)

    # ------------------------------------------------------------------
    # Thread lifecycle

    async def _load_thread(self, inv: Invocation) -> Thread:
        request = inv.request
        if request.thread is not None:
            return request.thread
        if not request.thread_id:
            return Thread.create()

        checkpoint = None
        if self.checkpoints is not None:
            try:
                checkpoint = await self.checkpoints.load(request.thread_id)
            except CheckpointIOError as e:
                log.warning("Checkpoint load failed, starting fresh", thread_id=request.thread_id, error=str(e))
                inv.channel.emit(EventType.WARNING, message=str(e), operation="load")
        if checkpoint is None:
            return Thread.create(request.thread_id)

        thread = checkpoint.to_thread()
        inv.channel.emit(
            EventType.CHECKPOINT_LOADED,
            step=thread.step,
            message_count=len(thread.messages),
            pending_approvals=len(thread.pending_approvals),
        )
        log.info("Checkpoint loaded", thread_id=thread.id, step=thread.step)
        return thread

    async def _save(self, inv: Invocation, thread: Thread) -> None:
        if thread.ephemeral or self.checkpoints is None or inv.cancelled:
            return
        try:
            await self.checkpoints.save(Checkpoint.from_thread(thread))
        except CheckpointIOError as e:
            log.warning("Checkpoint save failed, continuing unpersisted", thread_id=thread.id, error=str(e))
            inv.channel.emit(EventType.WARNING, message=str(e), operation="save")
            return
        inv.channel.emit(EventType.CHECKPOINT_SAVED, step=thread.step)

    def _backend_for(self, thread: Thread) -> ContentBackend:
        return self.backend if self.backend is not None else StateBackend(thread.files)

    @staticmethod
    def _result(
        thread: Thread,
        status: str,
        reason: str,
        error: str | None = None,
    ) -> RunResult:
        return RunResult(
            thread_id=thread.id,
            status=status,
            reason=reason,
            step=thread.step,
            text=thread.last_assistant_text(),
            messages=list(thread.messages),
            todos=list(thread.todos),
            pending_approvals=list(thread.pending_approvals),
            error=error,
        )

    def _finish(self, inv: Invocation, thread: Thread, reason: str) -> RunResult:
        status = "cancelled" if reason == "cancelled" else "completed"
        result = self._result(thread, status, reason)
        inv.channel.emit(
            EventType.DONE,
            reason=reason,
            final_state={
                "step": thread.step,
                "text": result.text,
                "todos": [todo.to_dict() for todo in thread.todos],
                "message_count": len(thread.messages),
            },
        )
        log.info("Invocation finished", thread_id=thread.id, reason=reason, step=thread.step)
        return result

    # ------------------------------------------------------------------
    # Tool results

    def _tool_context(self, inv: Invocation, thread: Thread, backend: ContentBackend) -> Callable[[ToolCall], ToolContext]:
        def make(call: ToolCall) -> ToolContext:
            return ToolContext(
                thread_id=thread.id,
                tool_call_id=call.id,
                step=thread.step,
                backend=backend,
                todos=list(thread.todos),
                depth=inv.depth,
                channel=inv.channel,
                engine=self,
            )

        return make

    async def _append_results(
        self,
        inv: Invocation,
        thread: Thread,
        backend: ContentBackend,
        calls: list[ToolCall],
        results: dict[str, ToolResult],
    ) -> None:
        """Append tool messages in call order and apply state updates."""
        by_id = {call.id: call for call in calls}
        for call_id, result in results.items():
            call = by_id[call_id]
            tool = self.registry.find(call.name)
            message = Message(
                role="tool",
                content=result.text,
                tool_call_id=call.id,
                tool_name=call.name,
                metadata={"success": result.success, "approval": call.approval.value if call.approval else None},
            )
            admitted = await self.context.admit(
                thread,
                message,
                step=thread.step,
                backend=backend,
                max_result_tokens=tool.max_result_tokens if tool is not None else None,
            )
            thread.add_message(admitted)

            todos = result.updates.get("todos")
            if todos is not None:
                thread.todos = [TodoItem.from_dict(item) for item in todos]
                inv.channel.emit(EventType.TODOS_CHANGED, todos=[t.to_dict() for t in thread.todos])

    @staticmethod
    def _close_dangling_calls(thread: Thread, reason: str) -> int:
        """Synthesize results for tool calls that never received one.

        Pending approvals are rejected; the reasoner must never see a tool call
        without a matching result.
        """
        for call in thread.pending_approvals:
            if call.approval is ApprovalState.PENDING:
                call.reject(reason)
        thread.pending_approvals = []

        answered = {msg.tool_call_id for msg in thread.messages if msg.role == "tool"}
        patched: list[tuple[int, Message]] = []
        for idx, msg in enumerate(thread.messages):
            if msg.role != "assistant":
                continue
            for call in msg.tool_calls:
                if call.id in answered:
                    continue
                answered.add(call.id)
                patched.append((idx, Message(
                    role="tool",
                    content=f"Tool call '{call.name}' with id {call.id} was cancelled: {reason}",
                    tool_call_id=call.id,
                    tool_name=call.name,
                    metadata={"success": False, "cancelled": True},
                )))
        # Insert after the issuing assistant message and its existing results.
        for idx, message in reversed(patched):
            insert_at = idx + 1
            while insert_at < len(thread.messages) and thread.messages[insert_at].role == "tool":
                insert_at += 1
            thread.messages.insert(insert_at, message)
        return len(patched)

    # ------------------------------------------------------------------
    # Main loop

    async def _execute(self, inv: Invocation) -> RunResult:
        thread: Thread | None = None
        try:
            thread = await self._load_thread(inv)
            inv.channel.thread_id = thread.id
            with bind_invocation(thread.id, inv.depth, inv.channel.parent_id):
                return await self._loop(inv, thread, self._backend_for(thread))
        except _Finished as finished:
            return finished.result
        except (DeckhandError, ValueError) as e:
            # ValueError covers malformed decisions and policy entries.
            log.error("Invocation failed", thread_id=inv.thread_id, error=str(e), error_type=type(e).__name__)
            return self._fail(inv, thread, e)
        except Exception as e:
            log.error("Invocation crashed", thread_id=inv.thread_id, error=str(e), exc_info=True)
            return self._fail(inv, thread, e)

    def _fail(self, inv: Invocation, thread: Thread | None, error: Exception) -> RunResult:
        inv.channel.emit(EventType.ERROR, error=str(error), error_type=type(error).__name__)
        if thread is None:
            thread = Thread.create(inv.request.thread_id)
        return self._result(thread, "error", type(error).__name__, error=str(error))

    async def _apply_resume(self, inv: Invocation, thread: Thread, backend: ContentBackend) -> None:
        """Record decisions, then finish the suspended step once every call is decided."""
        if not thread.pending_approvals:
            raise ApprovalError(f"Thread {thread.id} has no tool calls awaiting approval")

        for decision in inv.request.resume:
            call = thread.pending_call(decision.tool_call_id)
            if call is None:
                raise ApprovalError(f"Unknown tool call id for thread {thread.id}: {decision.tool_call_id}")
            apply_decision(call, decision)
            inv.channel.emit(
                EventType.APPROVAL_RESPONSE,
                tool_call_id=call.id,
                decision=decision.decision,
                edited=decision.edited_arguments is not None,
            )

        undecided = [c for c in thread.pending_approvals if c.approval is ApprovalState.PENDING]
        if undecided:
            await self._suspend(inv, thread, undecided)

        if inv.cancelled:
            raise _Finished(self._finish(inv, thread, "cancelled"))

        calls = list(thread.pending_approvals)
        dispatch = await inv.gateway.dispatch(
            calls,
            self._tool_context(inv, thread, backend),
            inv.channel,
        )
        thread.pending_approvals = []
        await self._append_results(inv, thread, backend, calls, dispatch.results)

    async def _suspend(self, inv: Invocation, thread: Thread, pending: list[ToolCall]) -> None:
        inv.channel.emit(EventType.APPROVAL_REQUESTED, tool_calls=[call.to_dict() for call in pending])
        await self._save(inv, thread)
        log.info("Invocation suspended for approval", thread_id=thread.id, pending=[c.id for c in pending])
        raise _Finished(self._result(thread, "interrupted", "approval_required"))

    def _stop_reason(self, inv: Invocation, thread: Thread, steps_run: int, last: Message) -> str | None:
        request = inv.request
        if not last.tool_calls:
            return "finish"
        if steps_run >= self.config.loop.hard_step_ceiling:
            return "step_ceiling"
        max_steps = request.max_steps if request.max_steps is not None else self.config.loop.max_steps
        if max_steps is not None and steps_run >= max_steps:
            return "max_steps"
        if request.stop_when is not None:
            state = StepState(
                thread_id=thread.id,
                step=thread.step,
                steps_this_run=steps_run,
                messages=list(thread.messages),
                todos=list(thread.todos),
                last_text=last.content,
                tool_calls=list(last.tool_calls),
            )
            if request.stop_when(state):
                return "stop_condition"
        return None

    async def _complete_step(self, inv: Invocation, thread: Thread) -> None:
        thread.step += 1
        await self.context.summarize_if_needed(thread)
        await self._save(inv, thread)

    async def _loop(self, inv: Invocation, thread: Thread, backend: ContentBackend) -> RunResult:
        request = inv.request
        steps_run = 0

        if request.resume:
            last_assistant = next((m for m in reversed(thread.messages) if m.role == "assistant"), None)
            await self._apply_resume(inv, thread, backend)
            await self._complete_step(inv, thread)
            steps_run += 1
            if last_assistant is not None:
                reason = self._stop_reason(inv, thread, steps_run, last_assistant)
                if reason is not None:
                    return self._finish(inv, thread, reason)
        elif request.prompt or request.messages:
            closed = self._close_dangling_calls(thread, "superseded by new input")
            if closed:
                log.info("Closed dangling tool calls", thread_id=thread.id, count=closed)

        inputs = list(request.messages)
        if request.prompt:
            inputs.append(Message(role="user", content=request.prompt))
        for message in inputs:
            self.context.message_tokens(message)
            thread.add_message(message)

        while True:
            if inv.cancelled:
                return self._finish(inv, thread, "cancelled")

            prompt = [Message(role="system", content=self.system_prompt), *thread.messages]
            try:
                response = await self.reasoner.invoke(prompt, self.registry.get_definitions(), mode="step")
            except DeckhandError:
                raise
            except Exception as e:
                raise ReasonerError(f"{type(e).__name__}: {e}") from e

            assistant = Message(role="assistant", content=response.content or "", tool_calls=list(response.tool_calls))
            self.context.message_tokens(assistant)
            thread.add_message(assistant)
            if assistant.content.strip():
                inv.channel.emit(EventType.TEXT, text=assistant.content)

            if assistant.tool_calls:
                if inv.cancelled:
                    self._close_dangling_calls(thread, "invocation cancelled")
                    return self._finish(inv, thread, "cancelled")

                dispatch: StepDispatch = await inv.gateway.dispatch(
                    assistant.tool_calls,
                    self._tool_context(inv, thread, backend),
                    inv.channel,
                )
                await self._append_results(inv, thread, backend, assistant.tool_calls, dispatch.results)
                if dispatch.suspended:
                    thread.pending_approvals = list(dispatch.deferred)
                    await self._suspend(inv, thread, dispatch.deferred)

            await self._complete_step(inv, thread)
            steps_run += 1
            log.debug("Step completed", thread_id=thread.id, step=thread.step, tool_calls=len(assistant.tool_calls))

            reason = self._stop_reason(inv, thread, steps_run, assistant)
            if reason is not None:
                return self._finish(inv, thread, reason)

    # ------------------------------------------------------------------
    # Subagents

    def subagent_policy(self, spec: SubagentSpec) -> ApprovalPolicy:
        """Approval policy for a nested invocation; inherited only on request."""
        if spec.approval is not None:
            return spec.approval
        if spec.inherit_approval:
            return self.policy
        return ApprovalPolicy()

    async def run_subagent(self, spec: SubagentSpec, task: str, context: ToolContext) -> RunResult:
        """Run a nested invocation on a fresh ephemeral thread, forwarding its events.

        Raises:
            SubagentDepthError: nesting would exceed ``loop.max_subagent_depth``
            ToolExecutionError: the nested invocation ended with an error
        """
        depth = context.depth + 1
        max_depth = self.config.loop.max_subagent_depth
        if depth > max_depth:
            raise SubagentDepthError(depth, max_depth)

        if spec.tools is not None:
            registry = ToolRegistry([TodoTool(), LsTool(), ReadFileTool(), WriteFileTool(), *spec.tools])
        else:
            registry = self.registry
        prompt = spec.system_prompt or self.instructions.load(SUBAGENT_PROMPT)
        child = Engine(
            reasoner=self.reasoner,
            tools=registry,
            checkpoints=None,
            backend=context.backend,
            approval=self.subagent_policy(spec),
            approval_handler=self.approval_handler,
            subagents=self.subagents,
            system_prompt=prompt,
            config=self.config,
            instructions=self.instructions,
            nested=True,
        )
        thread = Thread.create()
        invocation = child._invocation(
            _Request(prompt=task, thread=thread, max_steps=spec.max_steps),
            parent_id=context.tool_call_id,
            depth=depth,
        )

        channel = context.channel
        if channel is not None:
            channel.emit(
                EventType.SUBAGENT_START,
                name=spec.name,
                task=task,
                tool_call_id=context.tool_call_id,
                child_thread_id=thread.id,
            )
        async for event in invocation:
            if channel is not None and not event.is_terminal:
                channel.forward(event, context.tool_call_id)
        result = invocation.result
        assert result is not None
        if channel is not None:
            channel.emit(
                EventType.SUBAGENT_FINISH,
                name=spec.name,
                tool_call_id=context.tool_call_id,
                status=result.status,
                reason=result.reason,
                text=result.text,
                error=result.error,
            )
        if result.status == "error":
            raise ToolExecutionError("task", result.error or "subagent failed")
        return result


__all__ = [
    "Engine",
    "Invocation",
    "RunResult",
    "StepState",
]