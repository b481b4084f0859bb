"""Checkpoint persistence for threads."""

from pathlib import Path

from deckhand.checkpoint.base import Checkpoint, CheckpointStore, sanitize_thread_id
from deckhand.checkpoint.sqlite import SqliteCheckpointStore
from deckhand.checkpoint.stores import FileCheckpointStore, MemoryCheckpointStore
from deckhand.config import Config, get_config


def create_checkpoint_store(config: Config | None = None) -> CheckpointStore:
    """Build the checkpoint store selected by ``checkpoint.storage``."""
    cfg = (config or get_config()).checkpoint
    if cfg.storage == "memory":
        return MemoryCheckpointStore(namespace=cfg.namespace)
    if cfg.storage == "sqlite":
        path = Path(cfg.path).expanduser()
        if path.suffix != ".db":
            path = path / "checkpoints.db"
        return SqliteCheckpointStore(path)
    return FileCheckpointStore(Path(cfg.path).expanduser() / sanitize_thread_id(cfg.namespace))


__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "SqliteCheckpointStore",
    "create_checkpoint_store",
    "sanitize_thread_id",
]
