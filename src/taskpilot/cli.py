from __future__ import annotations

import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from taskpilot.config import (
    AppConfig,
    LLMSettings,
    Paths,
    ToolSettings,
    load_config,
    load_paths,
    save_config,
)
from taskpilot.daemon import AgentDaemon
from taskpilot.db import Database
from taskpilot.errors import TaskBusyError
from taskpilot.llm import AnthropicClient, LLMProvider, OpenAIClient
from taskpilot.models import TaskStatus, Workspace
from taskpilot.run_logs import latest_metrics_for_task

app = typer.Typer(help="Taskpilot agent task runner")
console = Console()

_STATUS_STYLES = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "yellow",
    TaskStatus.PAUSED: "yellow",
}


@app.callback()
def main(
    ctx: typer.Context,
    home: Optional[Path] = typer.Option(None, "--home", help="Data directory (default ~/.taskpilot)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    ctx.obj = load_paths(home)


def _init_db(db_path: Path) -> Database:
    db = Database(db_path)
    db.initialize()
    return db


def _load_or_raise_config(paths: Paths) -> AppConfig:
    if not paths.config_path.exists():
        typer.echo("Config not found. Run `taskpilot setup` to configure the LLM.")
        raise typer.Exit(code=1)
    return load_config(paths.config_path)


def _build_llm_client(settings: LLMSettings) -> LLMProvider:
    if not settings.api_key:
        typer.echo(f"An API key is required for provider {settings.provider}.")
        raise typer.Exit(code=1)
    if settings.provider == "anthropic":
        return AnthropicClient(base_url=settings.base_url, api_key=settings.api_key)
    if settings.provider == "openai":
        return OpenAIClient(base_url=settings.base_url, api_key=settings.api_key)
    typer.echo(f"Unsupported LLM provider: {settings.provider}")
    raise typer.Exit(code=1)


def _build_daemon(paths: Paths) -> AgentDaemon:
    config = _load_or_raise_config(paths)
    db = _init_db(paths.db_path)
    return AgentDaemon(db, paths, config, _build_llm_client(config.llm))


def _format_ts(timestamp_ms: int | None) -> str:
    if not timestamp_ms:
        return "-"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _print_task(db: Database, paths: Paths, task_id: str) -> None:
    task = db.fetch_task(task_id)
    if task is None:
        typer.echo(f"Task not found: {task_id}")
        raise typer.Exit(code=1)
    style = _STATUS_STYLES.get(task.status, "cyan")
    console.print(f"[bold]{escape(task.title)}[/bold] ({task.id})")
    console.print(f"Status: [{style}]{task.status.value}[/{style}]")
    if task.error:
        console.print(f"Error: [red]{escape(task.error)}[/red]")
    if task.result_summary:
        console.print(escape(task.result_summary))
    metrics = latest_metrics_for_task(paths.logs_dir, task.id)
    if metrics:
        console.print(
            f"[dim]tokens in={metrics.get('input_tokens', 0)} "
            f"out={metrics.get('output_tokens', 0)} "
            f"cost=${float(metrics.get('cost', 0.0)):.4f} "
            f"iterations={metrics.get('iterations', 0)}[/dim]"
        )


@app.command()
def setup(ctx: typer.Context) -> None:
    """Write the LLM and tool configuration."""
    paths: Paths = ctx.obj
    provider = typer.prompt("LLM provider (anthropic/openai)", default="anthropic")
    if provider not in {"anthropic", "openai"}:
        typer.echo("Provider must be 'anthropic' or 'openai'.")
        raise typer.Exit(code=1)
    if provider == "anthropic":
        model = typer.prompt("LLM model", default="claude-sonnet-4-5-20250514")
        base_url = typer.prompt("LLM base URL", default="https://api.anthropic.com")
    else:
        model = typer.prompt("LLM model", default="gpt-4o-mini")
        base_url = typer.prompt("LLM base URL", default="https://api.openai.com/v1")
    api_key = typer.prompt("API key", hide_input=True)
    shell_enabled = typer.confirm("Allow the agent to run shell commands?", default=False)
    config = AppConfig(
        llm=LLMSettings(provider=provider, model=model, base_url=base_url, api_key=api_key),
        tools=ToolSettings(shell_enabled=shell_enabled),
    )
    save_config(paths.config_path, config)
    typer.echo(f"Config saved to {paths.config_path}")


@app.command()
def run(
    ctx: typer.Context,
    title: str = typer.Argument(..., help="Short task title."),
    prompt: str = typer.Argument(..., help="What the agent should do."),
    workspace: Optional[Path] = typer.Option(None, help="Workspace directory for file tools."),
    allow_shell: bool = typer.Option(False, "--allow-shell", help="Grant the shell permission."),
) -> None:
    """Create a task and execute it in the foreground."""
    paths: Paths = ctx.obj
    daemon = _build_daemon(paths)
    workspace_id = None
    if workspace is not None:
        workspace.mkdir(parents=True, exist_ok=True)
        record = Workspace(id=str(uuid.uuid4()), path=str(workspace.resolve()))
        if allow_shell:
            record = replace(record, permissions={**record.permissions, "shell": True})
        daemon.db.insert_workspace(record)
        workspace_id = record.id
    task = daemon.create_task(title, prompt, workspace_id=workspace_id)
    console.print(f"[dim]Task {task.id} queued[/dim]")
    daemon.start_task(task.id)
    try:
        daemon.wait_for_task(task.id)
    except KeyboardInterrupt:
        daemon.cancel_task(task.id)
        console.print("[yellow]Cancelled.[/yellow]")
    finally:
        daemon.shutdown()
    _print_task(daemon.db, paths, task.id)


@app.command()
def message(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to continue."),
    text: str = typer.Argument(..., help="Follow-up message."),
) -> None:
    """Send a follow-up message to a finished task."""
    paths: Paths = ctx.obj
    daemon = _build_daemon(paths)
    try:
        daemon.send_message(task_id, text)
    except KeyError as exc:
        typer.echo(str(exc.args[0]))
        raise typer.Exit(code=1)
    except TaskBusyError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    daemon.wait_for_task(task_id)
    _print_task(daemon.db, paths, task_id)


@app.command()
def events(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task whose event log to show."),
    raw: bool = typer.Option(False, "--json", help="Print events as JSON."),
) -> None:
    """Show the task event log."""
    paths: Paths = ctx.obj
    db = _init_db(paths.db_path)
    rows = db.list_events(task_id)
    if raw:
        typer.echo(
            json.dumps(
                [{"type": e.type, "timestamp": e.timestamp, "payload": e.payload} for e in rows],
                indent=2,
            )
        )
        return
    table = Table(title=f"Events for {task_id}")
    table.add_column("Time", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Detail")
    for event in rows:
        detail = json.dumps(event.payload, default=str)
        if len(detail) > 160:
            detail = detail[:157] + "..."
        table.add_row(_format_ts(event.timestamp), event.type, escape(detail))
    console.print(table)


@app.command()
def status(
    ctx: typer.Context,
    task_id: Optional[str] = typer.Argument(None, help="Task id; omit to list all tasks."),
) -> None:
    """Show one task, or list all tasks."""
    paths: Paths = ctx.obj
    db = _init_db(paths.db_path)
    if task_id is not None:
        _print_task(db, paths, task_id)
        return
    table = Table(title="Tasks")
    table.add_column("Id", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    for task in db.list_tasks():
        style = _STATUS_STYLES.get(task.status, "cyan")
        table.add_row(
            task.id,
            escape(task.title),
            f"[{style}]{task.status.value}[/{style}]",
            _format_ts(task.created_at),
        )
    console.print(table)


if __name__ == "__main__":
    app()
