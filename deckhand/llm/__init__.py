"""Reasoner interface and the Ollama reference implementation."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from deckhand.config import Config, get_config
from deckhand.exceptions import ReasonerAPIError, ReasonerError
from deckhand.logging import get_logger
from deckhand.thread import Message, ToolCall

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

ReasonerMode = Literal["step", "summarize"]


@dataclass
class ReasonerResponse:
    """Response from the reasoner.

    In ``step`` mode either ``content`` or ``tool_calls`` (or both) is set.
    In ``summarize`` mode ``content`` holds the summary text.
    """

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the reasoner."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class Reasoner(ABC):
    """Abstract base class for reasoners."""

    @abstractmethod
    async def invoke(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        mode: ReasonerMode = "step",
    ) -> ReasonerResponse:
        pass

    def count_tokens(self, text: str) -> int:
        """Rough estimate: ~1 token per 4 characters."""
        return (len(text) + 3) // 4

    async def close(self) -> None:
        return None


class OllamaReasoner(Reasoner):
    """Direct Ollama chat API reasoner."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama reasoner.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=120.0, follow_redirects=True)

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert thread messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tool definitions to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _parse_tool_calls(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for idx, tc in enumerate(raw_calls):
            function = tc.get("function", {}) or {}
            arguments = function.get("arguments", {})
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"raw": arguments}
            call_id = str(tc.get("id") or f"{uuid.uuid4().hex[:12]}_{idx}")
            calls.append(ToolCall(
                id=f"ollama_call_{call_id}",
                name=str(function.get("name", "")),
                arguments=arguments if isinstance(arguments, dict) else {"value": arguments},
            ))
        return calls

    async def invoke(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        mode: ReasonerMode = "step",
    ) -> ReasonerResponse:
        """Run one chat completion."""
        url = f"{self.base_url}/api/chat"

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": {
                "num_ctx": 65536,
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        # Summaries are plain text; never offer tools in that mode.
        if tools and mode == "step":
            body["tools"] = self._convert_tools(tools)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling Ollama", model=self.model, mode=mode, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=headers)
            if not response.is_success:
                raise ReasonerAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
        except ReasonerError:
            raise
        except httpx.HTTPError as e:
            raise ReasonerAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise ReasonerError(f"Ollama response decode error: {e}")

        message = data.get("message", {}) or {}
        tool_calls = self._parse_tool_calls(message.get("tool_calls") or [])
        usage = {
            "prompt_tokens": data.get("prompt_eval_count", 0),
            "completion_tokens": data.get("eval_count", 0),
            "total_tokens": data.get("prompt_eval_count", 0) + data.get("eval_count", 0),
        }
        return ReasonerResponse(
            content=str(message.get("content", "") or ""),
            tool_calls=tool_calls if mode == "step" else [],
            model=self.model,
            usage=usage,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_reasoner(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> Reasoner:
    """Create a reasoner for the configured provider."""
    if provider == "ollama":
        return OllamaReasoner(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a Reasoner instance.")


def reasoner_from_config(config: Config | None = None) -> Reasoner:
    """Build a reasoner from the ``model`` config section (global config by default)."""
    cfg = config or get_config()
    return create_reasoner(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        max_tokens=cfg.model.max_tokens,
    )
