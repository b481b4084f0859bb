import pytest

from deckhand.checkpoint import (
    Checkpoint,
    FileCheckpointStore,
    MemoryCheckpointStore,
    SqliteCheckpointStore,
    create_checkpoint_store,
    sanitize_thread_id,
)
from deckhand.config import Config
from deckhand.exceptions import CheckpointIOError
from deckhand.thread import ApprovalState, Message, Thread, TodoItem, ToolCall


def sample_thread(thread_id: str = "thread-1") -> Thread:
    thread = Thread.create(thread_id)
    thread.step = 4
    thread.add_message(Message(role="user", content="hello"))
    pending = ToolCall(id="call_9", name="deploy", arguments={"target": "prod"})
    pending.mark_pending()
    thread.add_message(Message(role="assistant", content="", tool_calls=[pending]))
    thread.todos = [TodoItem(id="1", content="ship", status="in_progress")]
    thread.files = {"/notes.txt": "remember"}
    thread.pending_approvals = [ToolCall.from_dict(pending.to_dict())]
    return thread


def assert_same_thread(restored: Thread, original: Thread) -> None:
    assert restored.id == original.id
    assert restored.step == original.step
    assert [m.to_dict() for m in restored.messages] == [m.to_dict() for m in original.messages]
    assert restored.todos == original.todos
    assert restored.files == original.files
    assert restored.pending_approvals[0].approval is ApprovalState.PENDING
    assert restored.pending_approvals[0].arguments == {"target": "prod"}


@pytest.mark.asyncio
async def test_memory_store_round_trip_and_overwrite():
    store = MemoryCheckpointStore()
    thread = sample_thread()

    await store.save(Checkpoint.from_thread(thread))
    first = await store.load("thread-1")
    assert first is not None
    assert_same_thread(first.to_thread(), thread)

    thread.step = 5
    await store.save(Checkpoint.from_thread(thread))
    second = await store.load("thread-1")
    assert second.step == 5
    assert second.created_at == first.created_at
    assert await store.list() == ["thread-1"]


@pytest.mark.asyncio
async def test_memory_store_is_isolated_from_live_thread_mutation():
    store = MemoryCheckpointStore()
    thread = sample_thread()
    await store.save(Checkpoint.from_thread(thread))

    thread.messages[0].content = "mutated"
    loaded = await store.load("thread-1")

    assert loaded.messages[0]["content"] == "hello"


@pytest.mark.asyncio
async def test_memory_store_namespaces_share_storage_without_collisions():
    shared: dict = {}
    alpha = MemoryCheckpointStore("alpha", storage=shared)
    beta = MemoryCheckpointStore("beta", storage=shared)

    await alpha.save(Checkpoint.from_thread(sample_thread("same")))

    assert await alpha.exists("same") is True
    assert await beta.exists("same") is False
    assert await beta.list() == []
    assert await alpha.delete("same") is True
    assert await alpha.delete("same") is False


@pytest.mark.asyncio
async def test_file_store_round_trip_with_unsafe_thread_id(tmp_path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    thread = sample_thread("user/42:main")

    await store.save(Checkpoint.from_thread(thread))

    assert (tmp_path / "checkpoints" / f"{sanitize_thread_id('user/42:main')}.json").is_file()
    loaded = await store.load("user/42:main")
    assert loaded is not None
    assert_same_thread(loaded.to_thread(), thread)
    assert await store.list() == ["user/42:main"]
    assert await store.exists("user/42:main") is True
    assert await store.delete("user/42:main") is True
    assert await store.load("user/42:main") is None
    assert await store.list() == []


def test_sanitized_ids_are_distinct_for_distinct_threads():
    assert sanitize_thread_id("thread-1") == "thread-1"
    assert sanitize_thread_id("team/a") != sanitize_thread_id("team_a")
    assert sanitize_thread_id("team/a").startswith("team_a-")


@pytest.mark.asyncio
async def test_file_store_keeps_threads_with_similar_ids_apart(tmp_path):
    store = FileCheckpointStore(tmp_path)
    slashed = sample_thread("team/a")
    slashed.step = 2
    await store.save(Checkpoint.from_thread(slashed))

    assert await store.load("team_a") is None
    assert await store.exists("team_a") is False

    underscored = sample_thread("team_a")
    underscored.step = 7
    await store.save(Checkpoint.from_thread(underscored))

    assert (await store.load("team/a")).step == 2
    assert (await store.load("team_a")).step == 7
    assert sorted(await store.list()) == ["team/a", "team_a"]


@pytest.mark.asyncio
async def test_file_store_ignores_a_file_owned_by_another_thread(tmp_path):
    store = FileCheckpointStore(tmp_path)
    await store.save(Checkpoint.from_thread(sample_thread("owner")))
    (tmp_path / "owner.json").rename(tmp_path / "intruder.json")

    assert await store.load("intruder") is None
    with pytest.raises(CheckpointIOError):
        await store.save(Checkpoint.from_thread(sample_thread("intruder")))


@pytest.mark.asyncio
async def test_file_store_load_of_corrupt_file_raises_checkpoint_io_error(tmp_path):
    store = FileCheckpointStore(tmp_path)
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(CheckpointIOError):
        await store.load("broken")


@pytest.mark.asyncio
async def test_file_store_save_failure_raises_checkpoint_io_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")
    store = FileCheckpointStore(blocker)

    with pytest.raises(CheckpointIOError):
        await store.save(Checkpoint.from_thread(sample_thread()))


@pytest.mark.asyncio
async def test_sqlite_store_round_trip(tmp_path):
    db_path = tmp_path / "checkpoints.db"
    store = SqliteCheckpointStore(db_path)
    try:
        thread = sample_thread()
        await store.save(Checkpoint.from_thread(thread))
        assert db_path.exists()

        first = await store.load("thread-1")
        assert first is not None
        assert_same_thread(first.to_thread(), thread)

        thread.step = 9
        await store.save(Checkpoint.from_thread(thread))
        second = await store.load("thread-1")
        assert second.step == 9
        assert second.created_at == first.created_at

        await store.save(Checkpoint.from_thread(sample_thread("thread-2")))
        assert set(await store.list()) == {"thread-1", "thread-2"}
        assert await store.delete("thread-1") is True
        assert await store.delete("thread-1") is False
        assert await store.exists("thread-1") is False
    finally:
        await store.close()


def test_create_checkpoint_store_selects_configured_storage(tmp_path):
    cfg = Config()
    cfg.checkpoint.path = str(tmp_path)

    cfg.checkpoint.storage = "memory"
    assert isinstance(create_checkpoint_store(cfg), MemoryCheckpointStore)

    cfg.checkpoint.storage = "file"
    file_store = create_checkpoint_store(cfg)
    assert isinstance(file_store, FileCheckpointStore)
    assert file_store.directory == tmp_path / "default"

    cfg.checkpoint.storage = "sqlite"
    sqlite_store = create_checkpoint_store(cfg)
    assert isinstance(sqlite_store, SqliteCheckpointStore)
    assert sqlite_store.db_path == tmp_path / "checkpoints.db"
