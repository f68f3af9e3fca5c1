"""Lock recovery commands."""

from __future__ import annotations

import typer
from rich.console import Console

from replbridge.session.lock import SessionLock, get_lock_status


def register_lock_commands(app: typer.Typer, console: Console) -> None:
    """Register the `lock` command group."""
    lock_app = typer.Typer(help="Inspect or break session locks")
    app.add_typer(lock_app, name="lock")

    @lock_app.command("show")
    def lock_show(
        ctx: typer.Context,
        session: str = typer.Argument(..., help="Session id"),
    ) -> None:
        """Show the current lock holder."""
        state = ctx.obj
        status = get_lock_status(session, paths=state.paths, settings=state.config.lock)
        if not status.locked:
            console.print(f"[dim]Session {session} is not locked[/dim]")
            return
        info = status.lock_info
        console.print(f"Held by PID {info.pid} on {info.hostname} since {info.acquired_at}")
        console.print(f"Breakable: {'[green]yes[/green]' if status.can_break else '[yellow]no[/yellow]'}")

    @lock_app.command("break")
    def lock_break(
        ctx: typer.Context,
        session: str = typer.Argument(..., help="Session id"),
        yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    ) -> None:
        """Delete a session lock regardless of its holder."""
        state = ctx.obj
        status = get_lock_status(session, paths=state.paths, settings=state.config.lock)
        if not status.locked:
            console.print(f"[dim]No lock for session {session}[/dim]")
            return
        if not yes and not status.can_break:
            info = status.lock_info
            typer.confirm(f"Lock is held by live PID {info.pid} on {info.hostname}. Break it anyway?", abort=True)
        SessionLock(session, paths=state.paths, settings=state.config.lock).force_break()
        console.print(f"[green]✓[/green] Lock for session {session} removed")
