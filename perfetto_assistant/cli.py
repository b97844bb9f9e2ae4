"""CLI entry point for Perfetto Assistant."""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from perfetto_assistant.backend import BackendError
from perfetto_assistant.engine import AssistantContext, AssistantEngine
from perfetto_assistant.envelope.formatters import format_display_value
from perfetto_assistant.envelope.widgets import ChartSpec, MetricSpec, Severity, TableResult
from perfetto_assistant.identity import fingerprint as trace_fingerprint
from perfetto_assistant.identity import read_trace_meta
from perfetto_assistant.log import configure_logging
from perfetto_assistant.models import Message, MessageKind, MessageRole, ReportLink
from perfetto_assistant.sessions import SessionStore, session_summary
from perfetto_assistant.settings import Settings, load_settings, save_settings
from perfetto_assistant.storage import SETTINGS_KEY, FileKeyValueStore, default_store_root

app = typer.Typer(
    help="Perfetto Assistant - Conversational analysis of Perfetto traces",
    no_args_is_help=True
)
sessions_app = typer.Typer(help="Manage stored conversations", no_args_is_help=True)
settings_app = typer.Typer(help="Show or change settings", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")
app.add_typer(settings_app, name="settings")
console = Console()

ROLE_LABELS = {
    MessageRole.USER: "[bold cyan]You[/bold cyan]",
    MessageRole.ASSISTANT: "[bold green]Assistant[/bold green]",
    MessageRole.SYSTEM: "[bold yellow]System[/bold yellow]",
}

SEVERITY_STYLES = {
    Severity.GOOD: "green",
    Severity.WARNING: "yellow",
    Severity.CRITICAL: "red",
}

DEFAULT_MAX_TABLE_ROWS = 50


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Perfetto Assistant - Conversational analysis of Perfetto traces."""
    configure_logging(verbose, console)


def _check_trace(trace: Path) -> None:
    if not trace.exists():
        console.print(f"[red]Error:[/red] Trace file not found: {trace}")
        raise typer.Exit(code=1)
    if not trace.is_file():
        console.print(f"[red]Error:[/red] Path is not a file: {trace}")
        raise typer.Exit(code=1)


def _store() -> FileKeyValueStore:
    return FileKeyValueStore(default_store_root())


def _context(backend_url: Optional[str] = None) -> AssistantContext:
    store = _store()
    settings = load_settings(store)
    if backend_url:
        settings.backend_url = backend_url.rstrip("/")
    return AssistantContext.create(store=store, settings=settings)


def _timestamp(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _print_table(table: TableResult) -> None:
    if table.metadata:
        meta = ", ".join(f"{k}: {format_display_value(v, k)}" for k, v in table.metadata.items())
        console.print(f"[dim]{meta}[/dim]")
    limit = table.max_visible_rows or DEFAULT_MAX_TABLE_ROWS
    grid = Table(title=table.title or None, show_lines=False)
    for col in table.columns:
        grid.add_column(col)
    for row in table.rows[:limit]:
        grid.add_row(*(format_display_value(v, c) for v, c in zip(row, table.columns)))
    console.print(grid)
    if table.row_count > limit:
        console.print(f"[dim]... {table.row_count - limit} more rows[/dim]")
    if table.query:
        console.print(f"[dim]{table.query}[/dim]")
    if table.summary is not None:
        if table.summary.title:
            console.print(f"[bold]{table.summary.title}[/bold]")
        if table.summary.content:
            console.print(Markdown(table.summary.content))
        for metric in table.summary.metrics:
            _print_metric_chip(metric)


def _print_metric_chip(metric) -> None:
    style = SEVERITY_STYLES[metric.severity]
    console.print(f"  [{style}]●[/{style}] {metric.label}: [bold]{metric.value}{metric.unit}[/bold]")


def _print_attachment(attachment) -> None:
    if isinstance(attachment, TableResult):
        _print_table(attachment)
    elif isinstance(attachment, MetricSpec):
        if attachment.title:
            console.print(f"[bold]{attachment.title}[/bold]")
        if attachment.body:
            console.print(Markdown(attachment.body))
        for metric in attachment.metrics:
            _print_metric_chip(metric)
    elif isinstance(attachment, ChartSpec):
        console.print(f"[bold]{attachment.title}[/bold] [dim]({attachment.chart_type} chart)[/dim]")
        for point in attachment.series:
            console.print(f"  {point.label}: {format_display_value(point.value)}")
    elif isinstance(attachment, ReportLink):
        console.print(f"[blue]Report:[/blue] {attachment.url}")


def _print_message(message: Message) -> None:
    if message.kind is MessageKind.PLACEHOLDER:
        console.print(f"[dim]... {message.content}[/dim]")
        return
    console.print(ROLE_LABELS[message.role])
    if message.content:
        console.print(Markdown(message.content))
    if message.attachment is not None:
        _print_attachment(message.attachment)
    console.print()


@app.command()
def fingerprint(
    trace: Path = typer.Option(..., "--trace", help="Path to Perfetto trace file"),
):
    """Print the fingerprint that keys a trace's conversations."""
    _check_trace(trace)
    try:
        meta = read_trace_meta(trace)
    except Exception as e:
        console.print(f"[red]Error loading trace:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(trace_fingerprint(meta))


@app.command()
def ask(
    query: str = typer.Argument(..., help="Question about the trace"),
    trace: Path = typer.Option(..., "--trace", help="Path to Perfetto trace file"),
    new_session: bool = typer.Option(False, "--new-session", help="Start a new conversation"),
    backend_url: Optional[str] = typer.Option(None, "--backend-url", help="Analysis backend URL"),
):
    """Ask the analysis backend a question about a trace."""
    _check_trace(trace)
    try:
        meta = read_trace_meta(trace)
    except Exception as e:
        console.print(f"[red]Error loading trace:[/red] {e}")
        raise typer.Exit(code=1)

    engine = AssistantEngine(_context(backend_url))
    session = engine.on_trace_loaded(meta)
    if new_session:
        session = engine.new_conversation()
    console.print(f"[blue]Session:[/blue] {session.session_id}")

    try:
        engine.ensure_remote_trace(trace)
    except (BackendError, OSError) as e:
        console.print(f"[red]Error uploading trace:[/red] {e}")
        raise typer.Exit(code=1)

    shown = len(engine.session.messages)
    try:
        session = asyncio.run(engine.send_query(query))
    except KeyboardInterrupt:
        engine.cancel()
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=130)

    for message in session.messages[shown:]:
        _print_message(message)


@sessions_app.command("list")
def list_sessions(
    trace: Optional[Path] = typer.Option(None, "--trace", help="Path to Perfetto trace file"),
    fingerprint: Optional[str] = typer.Option(None, "--fingerprint", help="Trace fingerprint"),
):
    """List the conversations stored for a trace."""
    if trace is None and fingerprint is None:
        console.print("[red]Error:[/red] Pass --trace or --fingerprint")
        raise typer.Exit(code=1)
    if fingerprint is None:
        _check_trace(trace)
        fingerprint = trace_fingerprint(read_trace_meta(trace))

    sessions = SessionStore(_store()).list_sessions(fingerprint)
    if not sessions:
        console.print(f"No sessions for {fingerprint}")
        return
    table = Table(title=fingerprint)
    table.add_column("Session")
    table.add_column("Summary")
    table.add_column("Messages", justify="right")
    table.add_column("Last active")
    for s in sorted(sessions, key=lambda s: s.last_active_at, reverse=True):
        table.add_row(s.session_id, session_summary(s), str(len(s.messages)), _timestamp(s.last_active_at))
    console.print(table)


@sessions_app.command("show")
def show_session(session_id: str = typer.Argument(..., help="Session id")):
    """Print every message of a stored conversation."""
    session = SessionStore(_store()).get_session(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)
    console.print(f"[blue]Trace:[/blue] {session.trace_name} ({session.trace_fingerprint})")
    console.print()
    for message in session.messages:
        _print_message(message)


@sessions_app.command("delete")
def delete_session(session_id: str = typer.Argument(..., help="Session id")):
    """Delete a stored conversation."""
    if not SessionStore(_store()).delete_session(session_id):
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Deleted {session_id}")


@sessions_app.command("cleanup")
def cleanup_sessions(
    max_age_days: int = typer.Option(30, "--max-age-days", help="Delete sessions idle longer than this"),
):
    """Delete conversations that have been idle too long."""
    deleted = SessionStore(_store()).cleanup_old_sessions(max_age_days)
    console.print(f"[green]✓[/green] Deleted {deleted} old sessions")


@settings_app.command("show")
def show_settings():
    """Print the effective settings."""
    console.print_json(json.dumps(load_settings(_store()).to_dict()))


@settings_app.command("set")
def set_settings(
    backend_url: Optional[str] = typer.Option(None, "--backend-url", help="Analysis backend URL"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Stream reconnect attempts"),
    completion_timeout: Optional[float] = typer.Option(
        None, "--completion-timeout", help="Seconds to wait for completion after a conclusion"
    ),
):
    """Change stored settings."""
    store = _store()
    stored = store.get(SETTINGS_KEY)
    settings = Settings.from_dict(stored) if isinstance(stored, dict) else Settings()
    if backend_url is not None:
        settings.backend_url = backend_url.rstrip("/")
    if max_retries is not None:
        if max_retries < 1:
            console.print("[red]Error:[/red] --max-retries must be at least 1")
            raise typer.Exit(code=1)
        settings.max_retries = max_retries
    if completion_timeout is not None:
        settings.completion_timeout_s = completion_timeout
    save_settings(store, settings)
    console.print("[green]✓[/green] Settings saved")


if __name__ == "__main__":
    app()
