"""Checkpoint store backed by SQLite."""

import json
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from deckhand.checkpoint.base import Checkpoint, CheckpointStore
from deckhand.exceptions import CheckpointIOError
from deckhand.logging import get_logger

log = get_logger(__name__)


class SqliteCheckpointStore(CheckpointStore):
    """Checkpoints stored as JSON rows in a SQLite database."""

    def __init__(self, db_path: Path | str):
        """Initialize the store.

        Args:
            db_path: Database file path
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    thread_id TEXT PRIMARY KEY,
                    step INTEGER NOT NULL DEFAULT 0,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_updated_at ON checkpoints(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def save(self, checkpoint: Checkpoint) -> None:
        """Save a checkpoint, keeping the original creation time."""
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT created_at FROM checkpoints WHERE thread_id = ?",
                (checkpoint.thread_id,),
            ) as cursor:
                row = await cursor.fetchone()
            if row:
                checkpoint.created_at = row[0]
            checkpoint.updated_at = datetime.now(UTC).isoformat()

            await db.execute("""
                INSERT OR REPLACE INTO checkpoints (thread_id, step, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                checkpoint.thread_id,
                checkpoint.step,
                json.dumps(checkpoint.to_dict()),
                checkpoint.created_at,
                checkpoint.updated_at,
            ))
            await db.commit()
        except (aiosqlite.Error, OSError) as e:
            log.error("Checkpoint save failed", thread_id=checkpoint.thread_id, error=str(e))
            raise CheckpointIOError(checkpoint.thread_id, "save", str(e))

    async def load(self, thread_id: str) -> Checkpoint | None:
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT payload FROM checkpoints WHERE thread_id = ?",
                (thread_id,),
            ) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointIOError(thread_id, "load", str(e))

        if not row:
            return None
        try:
            return Checkpoint.from_dict(json.loads(row[0]))
        except (ValueError, KeyError) as e:
            raise CheckpointIOError(thread_id, "load", f"corrupt payload: {e}")

    async def list(self) -> list[str]:
        """List thread ids, most recently updated first."""
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT thread_id FROM checkpoints ORDER BY updated_at DESC"
            ) as cursor:
                rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointIOError("*", "list", str(e))
        return [row[0] for row in rows]

    async def delete(self, thread_id: str) -> bool:
        try:
            db = await self._ensure_db()
            cursor = await db.execute(
                "DELETE FROM checkpoints WHERE thread_id = ?",
                (thread_id,),
            )
            await db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointIOError(thread_id, "delete", str(e))
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
