"""Context window management: oversized result eviction and history summarization."""

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from deckhand.backends import ContentBackend
from deckhand.config import ContextConfig, get_config
from deckhand.exceptions import BudgetExceededError, ContentBackendError, ReasonerError
from deckhand.instructions import SUMMARY_SYSTEM_PROMPT, SUMMARY_USER_PROMPT, InstructionLoader
from deckhand.llm import Reasoner
from deckhand.logging import get_logger
from deckhand.thread import EvictionRecord, Message, Thread

log = get_logger(__name__)

CHARS_PER_TOKEN = 4
EVICTION_ROOT = "/large_tool_results"
_MAX_SEGMENT_CHARS = 100
_UNSAFE_SEGMENT_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_segment(value: str) -> str:
    """Restrict a path segment to ``[A-Za-z0-9_-]`` and at most 100 chars."""
    return _UNSAFE_SEGMENT_CHARS.sub("_", str(value))[:_MAX_SEGMENT_CHARS]


def eviction_path(thread_id: str, step: int, tool_call_id: str) -> str:
    """Deterministic backend path for an evicted tool result."""
    return (
        f"{EVICTION_ROOT}/{sanitize_segment(thread_id)}/"
        f"step_{int(step)}_{sanitize_segment(tool_call_id)}.txt"
    )


@dataclass
class SummaryOutcome:
    """Result of one summarization check."""

    summarized: bool = False
    reason: str = ""
    tokens_before: int = 0
    tokens_after: int = 0
    replaced_messages: int = 0
    failures: int = 0
    details: dict[str, Any] = field(default_factory=dict)


class ContextWindowManager:
    """Keeps a thread's history inside the configured token budget."""

    def __init__(
        self,
        reasoner: Reasoner | None = None,
        config: ContextConfig | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.reasoner = reasoner
        self.config = config or get_config().context
        self.instructions = instructions or InstructionLoader()
        # Consecutive summarization failures per thread id.
        self._failures: dict[str, int] = {}

    def estimate_tokens(self, text: str) -> int:
        if not text:
            return 0
        if self.reasoner is not None:
            try:
                return max(0, int(self.reasoner.count_tokens(text)))
            except Exception as e:
                log.debug("Reasoner token count failed, using estimate", error=str(e))
        return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN

    def message_tokens(self, message: Message) -> int:
        """Return the cached token estimate for a message, computing it once."""
        if message.token_count is None:
            text = message.content or ""
            if message.tool_calls:
                text += json.dumps([tc.to_dict() for tc in message.tool_calls])
            message.token_count = self.estimate_tokens(text)
        return message.token_count

    def history_tokens(self, messages: list[Message]) -> int:
        return sum(self.message_tokens(msg) for msg in messages)

    @property
    def threshold_tokens(self) -> int:
        return max(1, int(self.config.max_tokens * self.config.summarization_threshold))

    @property
    def hard_ceiling_tokens(self) -> int:
        return max(1, int(self.config.max_tokens * self.config.hard_ceiling_ratio))

    def failure_count(self, thread_id: str) -> int:
        return self._failures.get(thread_id, 0)

    async def admit(
        self,
        thread: Thread,
        message: Message,
        *,
        step: int,
        backend: ContentBackend | None,
        max_result_tokens: int | None = None,
    ) -> Message:
        """Return the message to append, evicting an oversized tool result to the backend.

        Only ``tool`` messages are candidates. The same thread, step and call id
        always map to the same backend path, so retries overwrite rather than
        duplicate.
        """
        tokens = self.message_tokens(message)
        if message.role != "tool" or backend is None or message.eviction:
            return message

        limit = max_result_tokens or self.config.eviction_token_limit
        if tokens <= limit:
            return message

        call_id = message.tool_call_id or f"call_{len(thread.messages)}"
        path = eviction_path(thread.id, step, call_id)
        try:
            await backend.write(path, message.content)
        except ContentBackendError as e:
            log.warning(
                "Tool result eviction failed, keeping content inline",
                thread_id=thread.id,
                tool_call_id=call_id,
                error=str(e),
            )
            return message

        record = EvictionRecord(tool_call_id=call_id, path=path, tokens=tokens)
        pointer = (
            f"Tool result too large (~{tokens} tokens). "
            f"Content saved to {path}. "
            "Use read_file to access the full content."
        )
        log.info("Evicted large tool result", thread_id=thread.id, path=path, tokens=tokens)
        evicted = Message(
            role="tool",
            content=pointer,
            tool_call_id=message.tool_call_id,
            tool_name=message.tool_name,
            metadata={**message.metadata, "eviction": record.to_dict()},
        )
        self.message_tokens(evicted)
        return evicted

    @staticmethod
    def _split_index(messages: list[Message], keep_recent: int) -> int:
        """Index where the preserved tail begins.

        The tail never starts with a tool result whose assistant call would be
        summarized away.
        """
        cut = len(messages) - max(0, keep_recent)
        while 0 < cut < len(messages) and messages[cut].role == "tool":
            cut -= 1
        return max(0, cut)

    @staticmethod
    def format_messages(
        messages: list[Message],
        max_total_chars: int = 24000,
        max_item_chars: int = 600,
    ) -> str:
        """Format messages for the summarization prompt."""
        lines: list[str] = []
        consumed = 0
        for idx, msg in enumerate(messages, start=1):
            label = f"{idx}. {(msg.role or 'unknown').strip().lower()}"
            if msg.tool_name:
                label += f"({msg.tool_name})"
            content = re.sub(r"\s+", " ", (msg.content or "").strip())
            if msg.tool_calls:
                calls = ", ".join(f"{tc.name}({json.dumps(tc.arguments)})" for tc in msg.tool_calls)
                content = f"{content} [calls: {calls}]".strip()
            if len(content) > max_item_chars:
                content = content[:max_item_chars].rstrip() + "... [truncated]"
            line = f"{label}: {content}"
            if consumed + len(line) > max_total_chars:
                lines.append("[... older conversation excerpt truncated for summarization ...]")
                break
            lines.append(line)
            consumed += len(line)
        return "\n".join(lines)

    async def _summarize(self, messages: list[Message]) -> str:
        if self.reasoner is None:
            raise ReasonerError("No reasoner available for summarization")
        prompt = [
            Message(role="system", content=self.instructions.load(SUMMARY_SYSTEM_PROMPT)),
            Message(
                role="user",
                content=self.instructions.render(
                    SUMMARY_USER_PROMPT,
                    count=len(messages),
                    formatted=self.format_messages(messages),
                ),
            ),
        ]
        response = await self.reasoner.invoke(prompt, tools=None, mode="summarize")
        summary = (response.content or "").strip()
        if not summary:
            raise ReasonerError("Reasoner returned an empty summary")
        return summary

    async def summarize_if_needed(self, thread: Thread, force: bool = False) -> SummaryOutcome:
        """Replace the oldest messages with one summary once the history crosses the threshold.

        Raises:
            BudgetExceededError: history is above the hard ceiling and summarization
                failed ``max_summarization_failures`` times in a row
        """
        messages = thread.messages
        total = self.history_tokens(messages)
        threshold = self.threshold_tokens
        if not force and total < threshold:
            return SummaryOutcome(reason="below_threshold", tokens_before=total, tokens_after=total)

        cut = self._split_index(messages, self.config.keep_recent_messages)
        if cut <= 0:
            return SummaryOutcome(reason="nothing_to_summarize", tokens_before=total, tokens_after=total)

        head, tail = messages[:cut], messages[cut:]
        try:
            summary_text = await self._summarize(head)
        except ReasonerError as e:
            failures = self._failures.get(thread.id, 0) + 1
            self._failures[thread.id] = failures
            log.warning(
                "Summarization failed, skipping this cycle",
                thread_id=thread.id,
                failures=failures,
                tokens=total,
                error=str(e),
            )
            ceiling = self.hard_ceiling_tokens
            if total > ceiling and failures >= self.config.max_summarization_failures:
                raise BudgetExceededError(total, ceiling, failures)
            return SummaryOutcome(
                reason="failed",
                tokens_before=total,
                tokens_after=total,
                failures=failures,
                details={"error": str(e)},
            )

        self._failures.pop(thread.id, None)
        summary = Message(
            role="assistant",
            content=f"Conversation summary of earlier messages:\n{summary_text}",
            metadata={
                "summary": {
                    "replaced_messages": len(head),
                    "kept_messages": len(tail),
                    "tokens_before": total,
                    "created_at": datetime.now(UTC).isoformat(),
                }
            },
        )
        thread.messages = [summary, *tail]
        after = self.history_tokens(thread.messages)
        log.info(
            "Summarized thread history",
            thread_id=thread.id,
            before_tokens=total,
            after_tokens=after,
            replaced=len(head),
        )
        return SummaryOutcome(
            summarized=True,
            reason="summarized",
            tokens_before=total,
            tokens_after=after,
            replaced_messages=len(head),
        )
