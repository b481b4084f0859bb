"""Prompt templates for the step loop, subagents and summarization.

Templates are Markdown files shipped in this package. A file of the same
name in the personal directory (``~/.deckhand/instructions/`` or
``$DECKHAND_INSTRUCTIONS_DIR``) replaces the packaged one.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

SYSTEM_PROMPT = "system_prompt.md"
SUBAGENT_PROMPT = "subagent_prompt.md"
SUMMARY_SYSTEM_PROMPT = "summarization_system_prompt.md"
SUMMARY_USER_PROMPT = "summarization_user_prompt.md"

_PACKAGE_DIR = Path(__file__).resolve().parent
_PERSONAL_DIR = Path("~/.deckhand/instructions")


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Resolve, cache and render prompt templates."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = Path(base_dir).expanduser().resolve() if base_dir is not None else _PACKAGE_DIR
        if personal_dir is None:
            personal_dir = os.getenv("DECKHAND_INSTRUCTIONS_DIR") or _PERSONAL_DIR
        self.personal_dir = Path(personal_dir).expanduser().resolve()
        self._cache: dict[str, str] = {}

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        return personal if personal.is_file() else self.base_dir / name

    def load(self, name: str) -> str:
        """Return the stripped template text for ``name``."""
        if name not in self._cache:
            path = self._path(name)
            if not path.is_file():
                raise FileNotFoundError(f"Instruction template not found: {path}")
            self._cache[name] = path.read_text(encoding="utf-8").strip()
        return self._cache[name]

    def render(self, name: str, **variables: object) -> str:
        """Render ``{placeholder}`` fields; unknown placeholders are kept verbatim."""
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return self.load(name).format_map(_SafeFormatDict(values))

    def compose(self, name: str, extra: str | None = None) -> str:
        """Template text followed by caller-supplied instructions, if any."""
        base = self.load(name)
        extra = (extra or "").strip()
        return f"{base}\n\n{extra}" if extra else base


__all__ = [
    "InstructionLoader",
    "SUBAGENT_PROMPT",
    "SUMMARY_SYSTEM_PROMPT",
    "SUMMARY_USER_PROMPT",
    "SYSTEM_PROMPT",
]
