import asyncio
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner

import deckhand.config as config_module
from deckhand import __version__
from deckhand.checkpoint import Checkpoint, FileCheckpointStore
from deckhand.events import Event, EventType
from deckhand.main import app, render_event
from deckhand.thread import Thread

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_global_config():
    previous = config_module._config
    yield
    config_module._config = previous
    structlog.reset_defaults()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "deckhand.yaml"
    path.write_text(
        (
            "checkpoint:\n"
            "  storage: file\n"
            f"  path: {tmp_path / 'checkpoints'}\n"
            "logging:\n"
            "  level: WARNING\n"
        ),
        encoding="utf-8",
    )
    return path


def test_threads_reports_empty_store(config_file: Path):
    result = runner.invoke(app, ["threads", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "No checkpointed threads." in result.output


def test_threads_lists_saved_checkpoint(config_file: Path, tmp_path: Path):
    thread = Thread.create("demo")
    thread.step = 3
    store = FileCheckpointStore(tmp_path / "checkpoints" / "default")
    asyncio.run(store.save(Checkpoint.from_thread(thread)))

    result = runner.invoke(app, ["threads", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "demo" in result.output


def test_delete_missing_thread_exits_with_error(config_file: Path):
    result = runner.invoke(app, ["delete", "ghost", "-c", str(config_file)])

    assert result.exit_code == 1
    assert "No checkpoint for thread ghost" in result.output


def test_run_without_prompt_or_decisions_is_usage_error(config_file: Path):
    result = runner.invoke(app, ["run", "-c", str(config_file)])

    assert result.exit_code == 2


def test_run_decisions_require_thread(config_file: Path):
    result = runner.invoke(app, ["run", "--approve", "call_1", "-c", str(config_file)])

    assert result.exit_code == 2
    assert "--thread" in result.output


def test_version_command():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_render_event_indents_nested_events(capsys):
    render_event(Event(type=EventType.TEXT, seq=1, thread_id="t", data={"text": "nested hello"}, depth=2))

    assert "    nested hello" in capsys.readouterr().out
