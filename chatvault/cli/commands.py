"""CLI commands for chatvault."""

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from chatvault import __logo__, __version__

app = typer.Typer(
    name="chatvault",
    help=f"{__logo__} chatvault - Agent session storage and checkpoint compaction",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} chatvault v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
):
    """chatvault - Agent session storage and checkpoint compaction."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _make_manager():
    from chatvault.config.loader import load_config
    from chatvault.session.manager import SessionManager

    return SessionManager.from_config(load_config())


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


# ============================================================================
# Session Commands
# ============================================================================

sessions_app = typer.Typer(help="Inspect and manage sessions")
app.add_typer(sessions_app, name="sessions")


@sessions_app.command("list")
def sessions_list(
    feature: str = typer.Option(None, "--feature", "-f", help="Only sessions of this feature"),
    all: bool = typer.Option(False, "--all", "-a", help="Include archived sessions"),
):
    """List stored sessions."""
    manager = _make_manager()
    sessions = asyncio.run(manager.list_sessions(feature))
    if not all:
        sessions = [s for s in sessions if s.status == "active"]

    if not sessions:
        console.print("No sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Feature")
    table.add_column("Agent")
    table.add_column("Messages", justify="right")
    table.add_column("Compactions", justify="right")
    table.add_column("Status")
    table.add_column("Updated")

    for s in sessions:
        status = "[green]active[/green]" if s.status == "active" else "[dim]archived[/dim]"
        table.add_row(
            s.id,
            s.feature_id,
            s.agent_type,
            str(s.stats.total_messages),
            str(s.stats.total_compactions),
            status,
            _fmt_time(s.updated_at),
        )

    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: str = typer.Argument(..., help="Session ID"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Recent messages to show"),
):
    """Show a session's checkpoint and recent messages."""
    manager = _make_manager()

    async def load():
        session = await manager.get_session_by_id(session_id, feature)
        if session is None:
            return None, None, []
        checkpoint = await manager.get_checkpoint(session_id, feature)
        messages = await manager.get_recent_messages(session_id, feature, limit)
        return session, checkpoint, messages

    session, checkpoint, messages = asyncio.run(load())
    if session is None:
        console.print(f"[red]Session {session_id} not found[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]{session.id}[/bold] ({session.status})")
    console.print(
        f"Messages: {session.stats.total_messages}  "
        f"Compactions: {session.stats.total_compactions}  "
        f"Last compaction: {_fmt_time(session.stats.last_compaction_at) or 'never'}"
    )

    if checkpoint and not checkpoint.summary.is_empty:
        console.print(f"\n[bold]Checkpoint v{checkpoint.version}[/bold]")
        for heading, items in (
            ("Completed", checkpoint.summary.completed),
            ("In Progress", checkpoint.summary.in_progress),
            ("Pending", checkpoint.summary.pending),
            ("Blockers", checkpoint.summary.blockers),
            ("Decisions", checkpoint.summary.decisions),
        ):
            if items:
                console.print(f"[cyan]{heading}[/cyan]")
                for item in items:
                    console.print(f"  - {item}")

    if messages:
        console.print("\n[bold]Recent messages[/bold]")
        for msg in messages:
            console.print(f"[dim]{_fmt_time(msg.timestamp)}[/dim] [cyan]{msg.role}[/cyan]: {msg.content}")


@sessions_app.command("preview")
def sessions_preview(
    session_id: str = typer.Argument(..., help="Session ID"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature ID"),
    message: str = typer.Option(None, "--message", "-m", help="User message to include"),
    prompt: bool = typer.Option(False, "--prompt", help="Print the assembled system prompt"),
):
    """Show the token breakdown of the next request."""
    from chatvault.session.errors import SessionError

    manager = _make_manager()
    try:
        preview = asyncio.run(manager.preview_request(session_id, feature, message))
    except SessionError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    estimate = preview.estimate
    table = Table(title=f"Request preview: {session_id}")
    table.add_column("Component")
    table.add_column("Tokens", justify="right")
    for name, value in preview.breakdown.items():
        table.add_row(name, str(value))
    console.print(table)

    status = "[red]yes[/red]" if estimate.needs_compaction else "[green]no[/green]"
    console.print(
        f"Limit: {estimate.limit}  Threshold: {estimate.threshold:.0f}  "
        f"Needs compaction: {status}"
    )
    if prompt:
        console.print(preview.system_prompt, markup=False)


@sessions_app.command("compact")
def sessions_compact(
    session_id: str = typer.Argument(..., help="Session ID"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature ID"),
):
    """Compact a session's message log into its checkpoint now."""
    from chatvault.session.errors import SessionError

    manager = _make_manager()

    async def run():
        try:
            return await manager.force_compact(session_id, feature)
        finally:
            await manager.close()

    try:
        result = asyncio.run(run())
    except SessionError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if result.compacted:
        console.print(
            f"[green]✓[/green] Compacted {result.messages_compacted} messages "
            f"(checkpoint v{result.checkpoint.version}, ~{result.tokens_reclaimed} tokens reclaimed)"
        )
    else:
        console.print(f"[yellow]Nothing done: {result.outcome.value}[/yellow]")


@sessions_app.command("archive")
def sessions_archive(
    session_id: str = typer.Argument(..., help="Session ID"),
    feature: str = typer.Option(..., "--feature", "-f", help="Feature ID"),
):
    """Archive a session."""
    manager = _make_manager()
    if asyncio.run(manager.archive_session(session_id, feature)):
        console.print(f"[green]✓[/green] Archived {session_id}")
    else:
        console.print(f"[yellow]{session_id} not found or already archived[/yellow]")


@sessions_app.command("migrate")
def sessions_migrate(
    feature: str = typer.Argument(..., help="Feature ID"),
    path: Path = typer.Argument(..., help="Path to the legacy chat.json"),
    agent_type: str = typer.Option("feature", "--agent-type", help="Agent type of the session"),
):
    """Import a legacy chat.json into the feature session."""
    from chatvault.session.migration import migrate_legacy_chat

    manager = _make_manager()

    async def run():
        try:
            return await migrate_legacy_chat(manager, feature, path, agent_type)
        finally:
            await manager.close()

    result = asyncio.run(run())
    if not result.success:
        console.print(f"[red]Migration failed: {result.error}[/red]")
        raise typer.Exit(1)

    if result.messages_imported:
        console.print(
            f"[green]✓[/green] Imported {result.messages_imported} messages into "
            f"{result.session_id} (backup: {result.backup_path})"
        )
    else:
        console.print("Nothing to migrate.")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status():
    """Show chatvault status."""
    from chatvault.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()
    root = config.storage_path

    console.print(f"{__logo__} chatvault Status\n")

    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Storage: {root} {'[green]✓[/green]' if root.exists() else '[red]✗[/red]'}")
    console.print(
        f"Budget: {config.budget.limit} tokens, "
        f"compaction at {config.budget.compaction_threshold:.0%}"
    )
    auto = "[green]on[/green]" if config.compaction.auto else "[dim]off[/dim]"
    console.print(f"Compaction model: {config.compaction.model} (auto: {auto})")

    for name in ("anthropic", "openai", "gemini"):
        pc = getattr(config.providers, name)
        auth_info = "[green]api_key[/green]" if pc.api_key else "[dim]not set[/dim]"
        console.print(f"{name.capitalize()}: {auth_info}")


if __name__ == "__main__":
    app()
