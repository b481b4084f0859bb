"""Command-line entry point for Deckhand."""

import asyncio
import json
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from deckhand.backends import create_backend
from deckhand.checkpoint import CheckpointStore, create_checkpoint_store
from deckhand.config import Config, set_config
from deckhand.engine import Engine, RunResult
from deckhand.events import Event, EventType
from deckhand.exceptions import ConfigurationError, DeckhandError
from deckhand.gateway import ApprovalDecision
from deckhand.llm import reasoner_from_config
from deckhand.logging import configure_logging, log
from deckhand.thread import ToolCall

app = typer.Typer(help="Deckhand - step-loop task engine for language-model agents")
console = Console()


def _load_config(config: str = "", model: str = "", verbose: bool = False) -> Config:
    """Load configuration, apply CLI overrides and install it globally."""
    if verbose:
        os.environ["DECKHAND_LOGGING__LEVEL"] = "DEBUG"

    try:
        cfg = Config.from_yaml(Path(config)) if config else Config.load()
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    if model:
        cfg.model.model = model

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _short(value: object, limit: int = 160) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    text = " ".join(text.split())
    text = text if len(text) <= limit else text[:limit].rstrip() + "..."
    return escape(text)


def render_event(event: Event) -> None:
    """Print one event to the console."""
    indent = "  " * event.depth
    data = event.data
    if event.type == EventType.TEXT:
        console.print(f"{indent}{escape(str(data.get('text', '')))}")
    elif event.type == EventType.TOOL_CALL_START:
        console.print(f"{indent}[cyan]> {data.get('name')}[/cyan] {_short(data.get('arguments', {}))}")
    elif event.type == EventType.TOOL_CALL_END:
        status = "[green]ok[/green]" if data.get("success") else f"[red]failed[/red] {_short(data.get('error') or '')}"
        console.print(f"{indent}[cyan]< {data.get('name')}[/cyan] {status} ({data.get('duration_ms', 0)} ms)")
    elif event.type == EventType.APPROVAL_REQUESTED:
        for call in data.get("tool_calls", []):
            console.print(
                f"{indent}[yellow]approval needed[/yellow] {call.get('name')} "
                f"id={call.get('id')} {_short(call.get('arguments', {}))}"
            )
    elif event.type == EventType.APPROVAL_RESPONSE:
        console.print(f"{indent}[yellow]{data.get('decision')}[/yellow] {data.get('tool_call_id')}")
    elif event.type == EventType.TODOS_CHANGED:
        for todo in data.get("todos", []):
            console.print(f"{indent}[magenta]- \\[{todo.get('status')}] {escape(str(todo.get('content')))}[/magenta]")
    elif event.type == EventType.SUBAGENT_START:
        console.print(f"{indent}[blue]subagent {data.get('name')} started[/blue]: {_short(data.get('task', ''))}")
    elif event.type == EventType.SUBAGENT_FINISH:
        console.print(f"{indent}[blue]subagent {data.get('name')} {data.get('status')}[/blue]")
    elif event.type == EventType.CHECKPOINT_LOADED:
        console.print(f"[dim]resumed thread {event.thread_id} at step {data.get('step')}[/dim]")
    elif event.type == EventType.CHECKPOINT_SAVED:
        console.print(f"[dim]checkpoint saved (step {data.get('step')})[/dim]")
    elif event.type == EventType.WARNING:
        console.print(f"[yellow]warning:[/yellow] {escape(str(data.get('message')))}")
    elif event.type == EventType.ERROR:
        console.print(f"[red]error:[/red] {escape(str(data.get('error')))}")
    elif event.type == EventType.DONE:
        console.print(f"[dim]done ({data.get('reason')})[/dim]")


async def _confirm_call(call: ToolCall) -> ApprovalDecision:
    """Ask on the terminal whether a tool call may run."""
    question = f"Allow tool [bold]{call.name}[/bold] with {_short(call.arguments)}?"
    allowed = await asyncio.to_thread(Confirm.ask, question, default=False, console=console)
    if allowed:
        return ApprovalDecision.approve(call.id)
    return ApprovalDecision.reject(call.id, "declined by user")


async def _run(
    cfg: Config,
    prompt: str | None,
    thread_id: str | None,
    decisions: list[ApprovalDecision],
    max_steps: int | None,
    interactive: bool,
) -> RunResult:
    reasoner = reasoner_from_config(cfg)
    store = create_checkpoint_store(cfg)
    try:
        engine = Engine(
            reasoner=reasoner,
            checkpoints=store,
            backend=create_backend(cfg),
            approval_handler=_confirm_call if interactive else None,
            config=cfg,
        )
        invocation = engine.run(
            prompt,
            thread_id=thread_id,
            resume=decisions or None,
            max_steps=max_steps,
        )
        async for event in invocation:
            render_event(event)
        return await invocation.wait()
    finally:
        await store.close()
        await reasoner.close()


@app.command()
def run(
    prompt: str = typer.Argument(None, help="Task prompt (optional when resuming)"),
    thread: str = typer.Option("", "-t", "--thread", help="Thread id to create or continue"),
    approve: list[str] = typer.Option([], "--approve", help="Approve a pending tool call id"),
    reject: list[str] = typer.Option([], "--reject", help="Reject a pending tool call id"),
    max_steps: int = typer.Option(0, "--max-steps", help="Stop after this many steps (0: no limit)"),
    interactive: bool = typer.Option(True, "--interactive/--no-interactive", help="Ask for approvals in the terminal"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run a task, or resume a thread that is waiting for approval."""
    cfg = _load_config(config, model, verbose)
    decisions = [ApprovalDecision.approve(call_id) for call_id in approve]
    decisions += [ApprovalDecision.reject(call_id, "rejected from command line") for call_id in reject]
    if not prompt and not decisions:
        console.print("[red]Provide a prompt, or --approve/--reject to resume a thread.[/red]")
        raise typer.Exit(code=2)
    if decisions and not thread:
        console.print("[red]--approve/--reject require --thread.[/red]")
        raise typer.Exit(code=2)

    try:
        result = asyncio.run(
            _run(cfg, prompt or None, thread or None, decisions, max_steps or None, interactive)
        )
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(130)

    if result.status == "interrupted":
        ids = " ".join(f"--approve {call.id}" for call in result.pending_approvals)
        console.print(
            f"[yellow]Waiting for approval.[/yellow] Resume with: "
            f"deckhand run --thread {result.thread_id} {ids}"
        )
        raise typer.Exit(code=3)
    if result.status == "error":
        raise typer.Exit(code=1)
    if result.text:
        console.print(Panel(escape(result.text), title=f"thread {result.thread_id} - step {result.step}"))


async def _list_threads(store: CheckpointStore) -> list[tuple[str, int, str, int]]:
    rows = []
    try:
        for thread_id in await store.list():
            checkpoint = await store.load(thread_id)
            if checkpoint is None:
                continue
            rows.append((thread_id, checkpoint.step, checkpoint.updated_at, len(checkpoint.pending_approvals)))
    finally:
        await store.close()
    return rows


@app.command()
def threads(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List checkpointed threads."""
    cfg = _load_config(config)
    try:
        rows = asyncio.run(_list_threads(create_checkpoint_store(cfg)))
    except DeckhandError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if not rows:
        console.print("No checkpointed threads.")
        return
    table = Table(title="Threads")
    table.add_column("Thread")
    table.add_column("Step", justify="right")
    table.add_column("Updated")
    table.add_column("Pending", justify="right")
    for thread_id, step, updated_at, pending in rows:
        table.add_row(thread_id, str(step), updated_at, str(pending))
    console.print(table)


async def _delete_thread(store: CheckpointStore, thread_id: str) -> bool:
    try:
        return await store.delete(thread_id)
    finally:
        await store.close()


@app.command()
def delete(
    thread_id: str = typer.Argument(..., help="Thread id to delete"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Delete a thread's checkpoint."""
    cfg = _load_config(config)
    try:
        deleted = asyncio.run(_delete_thread(create_checkpoint_store(cfg), thread_id))
    except DeckhandError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    if not deleted:
        console.print(f"[yellow]No checkpoint for thread {thread_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Deleted thread {thread_id}")


@app.command()
def version() -> None:
    """Show version information."""
    from deckhand import __version__
    console.print(f"Deckhand v{__version__}")


if __name__ == "__main__":
    app()
