"""Content backends for evicted payloads and virtual files."""

from __future__ import annotations

import posixpath
from abc import ABC, abstractmethod
from pathlib import Path

from deckhand.config import Config, get_config
from deckhand.exceptions import ContentBackendError
from deckhand.logging import get_logger

log = get_logger(__name__)


def validate_path(path: str | None) -> str:
    """Normalize a virtual path to an absolute, ``/``-separated form.

    Raises:
        ContentBackendError: for empty paths or paths that traverse upwards
    """
    raw = str(path or "").strip().replace("\\", "/")
    if not raw:
        raise ContentBackendError("Path must not be empty")
    if ".." in raw.split("/"):
        raise ContentBackendError(f"Path traversal not allowed: {path}")
    normalized = posixpath.normpath("/" + raw.lstrip("/"))
    return normalized


class ContentBackend(ABC):
    """Storage for evicted tool results and virtual files."""

    @abstractmethod
    async def write(self, path: str, content: str) -> str:
        """Write content and return the normalized path."""

    @abstractmethod
    async def read(self, path: str) -> str:
        """Read full content; raises ContentBackendError if missing."""

    @abstractmethod
    async def list(self, prefix: str = "/") -> list[str]:
        """List file paths starting with prefix, sorted."""

    async def exists(self, path: str) -> bool:
        try:
            await self.read(path)
        except ContentBackendError:
            return False
        return True


class StateBackend(ContentBackend):
    """Virtual files kept in a thread's ``files`` mapping (persisted with checkpoints)."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files: dict[str, str] = files if files is not None else {}

    async def write(self, path: str, content: str) -> str:
        key = validate_path(path)
        self.files[key] = content
        return key

    async def read(self, path: str) -> str:
        key = validate_path(path)
        if key not in self.files:
            raise ContentBackendError(f"File not found: {key}")
        return self.files[key]

    async def list(self, prefix: str = "/") -> list[str]:
        normalized = validate_path(prefix) if prefix.strip("/") else "/"
        return sorted(key for key in self.files if key.startswith(normalized))

    async def exists(self, path: str) -> bool:
        return validate_path(path) in self.files


class FilesystemBackend(ContentBackend):
    """Files stored below a root directory on local disk."""

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        key = validate_path(path)
        target = (self.root / key.lstrip("/")).resolve()
        try:
            target.relative_to(self.root)
        except ValueError:
            raise ContentBackendError(f"Path escapes backend root: {path}")
        return target

    async def write(self, path: str, content: str) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            log.error("Backend write failed", path=str(target), error=str(e))
            raise ContentBackendError(f"Write failed for {path}: {e}")
        return validate_path(path)

    async def read(self, path: str) -> str:
        target = self._resolve(path)
        if not target.is_file():
            raise ContentBackendError(f"File not found: {validate_path(path)}")
        try:
            return target.read_text(encoding="utf-8")
        except OSError as e:
            raise ContentBackendError(f"Read failed for {path}: {e}")

    async def list(self, prefix: str = "/") -> list[str]:
        if not self.root.exists():
            return []
        normalized = validate_path(prefix) if prefix.strip("/") else "/"
        paths = []
        for file_path in self.root.rglob("*"):
            if not file_path.is_file():
                continue
            key = "/" + file_path.relative_to(self.root).as_posix()
            if key.startswith(normalized):
                paths.append(key)
        return sorted(paths)


def create_backend(config: Config | None = None) -> ContentBackend | None:
    """Build the configured shared backend.

    ``state`` returns None: each thread then gets a ``StateBackend`` over its
    own ``files`` mapping, which is persisted with the checkpoint.
    """
    cfg = config or get_config()
    if cfg.backend.storage == "filesystem":
        return FilesystemBackend(cfg.resolved_backend_root())
    return None
