"""In-memory and file-backed checkpoint stores."""

import asyncio
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from deckhand.checkpoint.base import Checkpoint, CheckpointStore, sanitize_thread_id
from deckhand.exceptions import CheckpointIOError
from deckhand.logging import get_logger

log = get_logger(__name__)


class MemoryCheckpointStore(CheckpointStore):
    """Checkpoints kept in process memory, partitioned by namespace."""

    def __init__(self, namespace: str = "default", storage: dict[str, dict[str, Any]] | None = None):
        self.namespace = namespace
        # Shared storage lets several stores (different namespaces) coexist.
        self._storage: dict[str, dict[str, Any]] = storage if storage is not None else {}

    def _key(self, thread_id: str) -> str:
        return f"{self.namespace}:{thread_id}"

    async def save(self, checkpoint: Checkpoint) -> None:
        key = self._key(checkpoint.thread_id)
        existing = self._storage.get(key)
        if existing:
            checkpoint.created_at = existing.get("created_at", checkpoint.created_at)
        checkpoint.updated_at = datetime.now(UTC).isoformat()
        # Stored as JSON text so later mutation of the live thread cannot leak in.
        self._storage[key] = json.loads(json.dumps(checkpoint.to_dict()))

    async def load(self, thread_id: str) -> Checkpoint | None:
        data = self._storage.get(self._key(thread_id))
        if data is None:
            return None
        return Checkpoint.from_dict(json.loads(json.dumps(data)))

    async def list(self) -> list[str]:
        prefix = f"{self.namespace}:"
        return sorted(key[len(prefix):] for key in self._storage if key.startswith(prefix))

    async def delete(self, thread_id: str) -> bool:
        return self._storage.pop(self._key(thread_id), None) is not None

    async def exists(self, thread_id: str) -> bool:
        return self._key(thread_id) in self._storage


class FileCheckpointStore(CheckpointStore):
    """One JSON file per thread below a directory."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def _path(self, thread_id: str) -> Path:
        return self.directory / f"{sanitize_thread_id(thread_id)}.json"

    def _write(self, checkpoint: Checkpoint) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._path(checkpoint.thread_id)
        if target.exists():
            previous = json.loads(target.read_text(encoding="utf-8"))
            owner = previous.get("thread_id")
            if owner is not None and owner != checkpoint.thread_id:
                raise ValueError(f"{target.name} belongs to thread {owner}")
            checkpoint.created_at = previous.get("created_at", checkpoint.created_at)
        checkpoint.updated_at = datetime.now(UTC).isoformat()
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(checkpoint.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, target)

    def _read(self, thread_id: str) -> Checkpoint | None:
        target = self._path(thread_id)
        if not target.is_file():
            return None
        checkpoint = Checkpoint.from_dict(json.loads(target.read_text(encoding="utf-8")))
        if checkpoint.thread_id != thread_id:
            log.warning("Checkpoint file belongs to another thread", path=str(target), owner=checkpoint.thread_id)
            return None
        return checkpoint

    async def save(self, checkpoint: Checkpoint) -> None:
        try:
            await asyncio.to_thread(self._write, checkpoint)
        except (OSError, ValueError) as e:
            log.error("Checkpoint save failed", thread_id=checkpoint.thread_id, error=str(e))
            raise CheckpointIOError(checkpoint.thread_id, "save", str(e))

    async def load(self, thread_id: str) -> Checkpoint | None:
        try:
            return await asyncio.to_thread(self._read, thread_id)
        except (OSError, ValueError, KeyError) as e:
            log.error("Checkpoint load failed", thread_id=thread_id, error=str(e))
            raise CheckpointIOError(thread_id, "load", str(e))

    async def list(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        thread_ids: list[str] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                log.warning("Skipping unreadable checkpoint", path=str(path), error=str(e))
                continue
            thread_ids.append(str(data.get("thread_id") or path.stem))
        return thread_ids

    async def delete(self, thread_id: str) -> bool:
        target = self._path(thread_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CheckpointIOError(thread_id, "delete", str(e))
        return True
