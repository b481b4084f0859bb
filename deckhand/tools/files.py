"""File tools over the content backend (ls, read_file, write_file)."""

from typing import Any

from deckhand.backends import ContentBackend
from deckhand.exceptions import ContentBackendError
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolContext, ToolResult

log = get_logger(__name__)

DEFAULT_READ_LIMIT = 2000
MAX_LINE_LENGTH = 10000
LINE_NUMBER_WIDTH = 6
EMPTY_CONTENT_WARNING = "System reminder: File exists but has empty contents"


def format_with_line_numbers(lines: list[str], start_line: int = 1) -> str:
    """Format lines ``cat -n`` style; long lines are split with ``N.k`` continuation markers."""
    result: list[str] = []
    for offset, line in enumerate(lines):
        number = offset + start_line
        if len(line) <= MAX_LINE_LENGTH:
            result.append(f"{str(number).rjust(LINE_NUMBER_WIDTH)}\t{line}")
            continue
        for chunk_idx in range(0, (len(line) + MAX_LINE_LENGTH - 1) // MAX_LINE_LENGTH):
            chunk = line[chunk_idx * MAX_LINE_LENGTH:(chunk_idx + 1) * MAX_LINE_LENGTH]
            marker = str(number) if chunk_idx == 0 else f"{number}.{chunk_idx}"
            result.append(f"{marker.rjust(LINE_NUMBER_WIDTH)}\t{chunk}")
    return "\n".join(result)


def _backend(context: ToolContext | None) -> ContentBackend:
    if context is None or context.backend is None:
        raise ContentBackendError("No content backend configured")
    return context.backend


class LsTool(Tool):
    """List files in the content backend."""

    name = "ls"
    description = "List files in the workspace, optionally below a path prefix."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path prefix to list (default: /)",
            },
        },
        "required": [],
    }
    timeout_seconds = 10.0

    async def execute(self, path: str = "/", **kwargs: Any) -> ToolResult:
        try:
            paths = await _backend(kwargs.get("_context")).list(path or "/")
        except ContentBackendError as e:
            return ToolResult(success=False, error=str(e))
        if not paths:
            return ToolResult(success=True, content=f"No files found in {path or '/'}")
        return ToolResult(success=True, content="\n".join(paths))


class ReadFileTool(Tool):
    """Read a file from the content backend with line paging."""

    name = "read_file"
    description = (
        "Read a file from the workspace. Output is line-numbered. "
        "Use offset and limit to page through large files such as saved tool results."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path of the file to read",
            },
            "offset": {
                "type": "number",
                "description": "Line offset to start reading from (0-indexed, default 0)",
            },
            "limit": {
                "type": "number",
                "description": f"Maximum number of lines to read (default {DEFAULT_READ_LIMIT})",
            },
        },
        "required": ["path"],
    }
    timeout_seconds = 10.0
    # Paged reads of evicted payloads must not be evicted again.
    max_result_tokens = 1_000_000

    async def execute(
        self,
        path: str,
        offset: int | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            offset: Optional 0-indexed line offset
            limit: Optional line limit

        Returns:
            ToolResult with line-numbered contents
        """
        try:
            content = await _backend(kwargs.get("_context")).read(path)
        except ContentBackendError as e:
            return ToolResult(success=False, error=str(e))

        if not content.strip():
            return ToolResult(success=True, content=EMPTY_CONTENT_WARNING)

        start = max(0, int(offset or 0))
        count = max(1, int(limit or DEFAULT_READ_LIMIT))
        lines = content.split("\n")
        if start >= len(lines):
            return ToolResult(
                success=False,
                error=f"Line offset {start} exceeds file length ({len(lines)} lines)",
            )
        selected = lines[start:start + count]
        body = format_with_line_numbers(selected, start + 1)
        if start + count < len(lines):
            body += f"\n\n[... {len(lines) - start - count} more lines, use offset={start + count} to continue ...]"
        return ToolResult(success=True, content=body)


class WriteFileTool(Tool):
    """Write a file to the content backend."""

    name = "write_file"
    description = "Create or overwrite a file in the workspace."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path of the file to write",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
        },
        "required": ["path", "content"],
    }
    timeout_seconds = 10.0

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        try:
            written = await _backend(kwargs.get("_context")).write(path, str(content))
        except ContentBackendError as e:
            return ToolResult(success=False, error=str(e))
        log.debug("File written", path=written, chars=len(content))
        return ToolResult(success=True, content=f"Wrote {len(content)} characters to {written}")
