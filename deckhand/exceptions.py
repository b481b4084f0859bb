"""Custom exceptions for Deckhand."""


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    pass


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    pass


class ReasonerError(DeckhandError):
    """Reasoner (language model) errors."""

    pass


class ReasonerAPIError(ReasonerError):
    """Reasoner API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(DeckhandError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ApprovalError(DeckhandError):
    """Invalid approval decision supplied on resume."""

    pass


class ApprovalStateError(ApprovalError):
    """Tool call approval state transition is not allowed."""

    def __init__(self, tool_call_id: str, current: str, requested: str):
        super().__init__(
            f"Tool call {tool_call_id} cannot move from '{current}' to '{requested}'"
        )
        self.tool_call_id = tool_call_id
        self.current = current
        self.requested = requested


class CheckpointError(DeckhandError):
    """Checkpoint-related errors."""

    pass


class CheckpointIOError(CheckpointError):
    """Checkpoint storage could not be read or written."""

    def __init__(self, thread_id: str, operation: str, message: str):
        super().__init__(f"Checkpoint {operation} failed for thread {thread_id}: {message}")
        self.thread_id = thread_id
        self.operation = operation


class ContentBackendError(DeckhandError):
    """Content backend read/write errors."""

    pass


class BudgetExceededError(DeckhandError):
    """History stayed above the hard ceiling after repeated summarization failures."""

    def __init__(self, current_tokens: int, ceiling_tokens: int, failures: int):
        super().__init__(
            f"Context budget exceeded: {current_tokens} > {ceiling_tokens} tokens "
            f"after {failures} failed summarization attempts"
        )
        self.current_tokens = current_tokens
        self.ceiling_tokens = ceiling_tokens
        self.failures = failures


class SubagentDepthError(DeckhandError):
    """Nested invocation exceeded the maximum depth."""

    def __init__(self, depth: int, max_depth: int):
        super().__init__(f"Subagent depth {depth} exceeds maximum of {max_depth}")
        self.depth = depth
        self.max_depth = max_depth
