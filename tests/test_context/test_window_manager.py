import pytest

from deckhand.backends import StateBackend
from deckhand.config import ContextConfig
from deckhand.context import ContextWindowManager, eviction_path, sanitize_segment
from deckhand.exceptions import BudgetExceededError, ContentBackendError, ReasonerError
from deckhand.llm import Reasoner, ReasonerResponse, ToolDefinition
from deckhand.thread import Message, Thread, ToolCall


class SummaryReasoner(Reasoner):
    def __init__(self, summary: str = "short summary", fail: bool = False):
        self.summary = summary
        self.fail = fail
        self.calls: list[tuple[str, list[Message]]] = []

    async def invoke(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        mode: str = "step",
    ) -> ReasonerResponse:
        self.calls.append((mode, messages))
        if self.fail:
            raise ReasonerError("summarizer offline")
        return ReasonerResponse(content=self.summary)


class BrokenBackend(StateBackend):
    async def write(self, path: str, content: str) -> str:
        raise ContentBackendError("read-only")


def tool_message(call_id: str, size: int) -> Message:
    return Message(role="tool", content="z" * size, tool_call_id=call_id, tool_name="dump")


def exchange(thread: Thread, idx: int, size: int = 800) -> None:
    thread.add_message(Message(
        role="assistant",
        content="",
        tool_calls=[ToolCall(id=f"c{idx}", name="dump")],
    ))
    thread.add_message(tool_message(f"c{idx}", size))


def test_eviction_path_is_deterministic_and_sanitized():
    path = eviction_path("thread/one", 3, "call:../x")

    assert path == "/large_tool_results/thread_one/step_3_call____x.txt"
    assert eviction_path("thread/one", 3, "call:../x") == path
    assert len(sanitize_segment("a" * 300)) == 100


def test_token_estimate_falls_back_to_four_chars_per_token():
    manager = ContextWindowManager(config=ContextConfig())

    assert manager.estimate_tokens("") == 0
    assert manager.estimate_tokens("abcd") == 1
    assert manager.estimate_tokens("abcde") == 2


@pytest.mark.asyncio
async def test_admit_evicts_oversized_tool_result():
    backend = StateBackend()
    thread = Thread.create("t1")
    manager = ContextWindowManager(config=ContextConfig(eviction_token_limit=100))

    admitted = await manager.admit(thread, tool_message("call_1", 4000), step=2, backend=backend)

    path = "/large_tool_results/t1/step_2_call_1.txt"
    assert admitted.eviction == {"tool_call_id": "call_1", "path": path, "tokens": 1000}
    assert admitted.tool_call_id == "call_1"
    assert "~1000 tokens" in admitted.content
    assert "read_file" in admitted.content
    assert backend.files[path] == "z" * 4000


@pytest.mark.asyncio
async def test_admit_is_idempotent_for_the_same_call():
    backend = StateBackend()
    thread = Thread.create("t1")
    manager = ContextWindowManager(config=ContextConfig(eviction_token_limit=100))

    first = await manager.admit(thread, tool_message("call_1", 4000), step=0, backend=backend)
    second = await manager.admit(thread, tool_message("call_1", 4000), step=0, backend=backend)

    assert first.eviction["path"] == second.eviction["path"]
    assert list(backend.files) == [first.eviction["path"]]


@pytest.mark.asyncio
async def test_admit_respects_per_tool_ceiling_and_skips_other_roles():
    backend = StateBackend()
    thread = Thread.create("t1")
    manager = ContextWindowManager(config=ContextConfig(eviction_token_limit=100))

    kept = await manager.admit(thread, tool_message("c", 4000), step=0, backend=backend, max_result_tokens=5000)
    user = await manager.admit(thread, Message(role="user", content="q" * 4000), step=0, backend=backend)

    assert kept.eviction is None
    assert user.eviction is None
    assert backend.files == {}


@pytest.mark.asyncio
async def test_admit_keeps_content_when_backend_write_fails():
    thread = Thread.create("t1")
    manager = ContextWindowManager(config=ContextConfig(eviction_token_limit=10))
    original = tool_message("c", 400)

    admitted = await manager.admit(thread, original, step=0, backend=BrokenBackend())

    assert admitted is original


@pytest.mark.asyncio
async def test_summarize_below_threshold_is_noop():
    reasoner = SummaryReasoner()
    manager = ContextWindowManager(reasoner, ContextConfig(max_tokens=100_000))
    thread = Thread.create("t1")
    exchange(thread, 0)

    outcome = await manager.summarize_if_needed(thread)

    assert outcome.summarized is False
    assert outcome.reason == "below_threshold"
    assert reasoner.calls == []


@pytest.mark.asyncio
async def test_summarize_replaces_oldest_run_with_one_message():
    reasoner = SummaryReasoner()
    manager = ContextWindowManager(reasoner, ContextConfig(max_tokens=1000, keep_recent_messages=4))
    thread = Thread.create("t1")
    thread.add_message(Message(role="user", content="start"))
    for idx in range(5):
        exchange(thread, idx)
    tail_before = thread.messages[-4:]

    outcome = await manager.summarize_if_needed(thread)

    assert outcome.summarized is True
    assert outcome.replaced_messages == 7
    assert thread.messages[0].is_summary
    assert thread.messages[0].role == "assistant"
    assert "short summary" in thread.messages[0].content
    assert thread.messages[1:] == tail_before
    assert reasoner.calls[0][0] == "summarize"
    assert "7 earlier messages" in reasoner.calls[0][1][-1].content


@pytest.mark.asyncio
async def test_preserved_tail_never_starts_with_orphaned_tool_result():
    reasoner = SummaryReasoner()
    manager = ContextWindowManager(reasoner, ContextConfig(max_tokens=1000, keep_recent_messages=3))
    thread = Thread.create("t1")
    thread.add_message(Message(role="user", content="start"))
    for idx in range(4):
        exchange(thread, idx)

    await manager.summarize_if_needed(thread)

    assert thread.messages[0].is_summary
    assert thread.messages[1].role == "assistant"
    assert thread.messages[1].tool_calls[0].id == thread.messages[2].tool_call_id


@pytest.mark.asyncio
async def test_summarization_failure_skips_then_raises_past_hard_ceiling():
    reasoner = SummaryReasoner(fail=True)
    manager = ContextWindowManager(
        reasoner,
        ContextConfig(max_tokens=500, keep_recent_messages=2, max_summarization_failures=2),
    )
    thread = Thread.create("t1")
    for idx in range(4):
        exchange(thread, idx)
    before = list(thread.messages)

    first = await manager.summarize_if_needed(thread)
    assert first.reason == "failed"
    assert first.failures == 1
    assert thread.messages == before

    with pytest.raises(BudgetExceededError):
        await manager.summarize_if_needed(thread)


@pytest.mark.asyncio
async def test_successful_summary_resets_failure_count():
    reasoner = SummaryReasoner(fail=True)
    manager = ContextWindowManager(reasoner, ContextConfig(max_tokens=500, keep_recent_messages=2))
    thread = Thread.create("t1")
    for idx in range(4):
        exchange(thread, idx)

    await manager.summarize_if_needed(thread)
    assert manager.failure_count("t1") == 1

    reasoner.fail = False
    outcome = await manager.summarize_if_needed(thread)
    assert outcome.summarized is True
    assert manager.failure_count("t1") == 0
