"""Status command: bridge record and lock state for one session."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from replbridge import __logo__
from replbridge.bridge.manager import BridgeManager
from replbridge.infra.process import is_socket
from replbridge.session.lock import get_lock_status
from replbridge.session.paths import shorten_session_id


def status_command(console: Console, manager: BridgeManager, session_id: str, lock_settings) -> None:
    """Show bridge and lock status for a session."""
    console.print(f"{__logo__} replbridge session {session_id} ({shorten_session_id(session_id)})\n")
    console.print(f"Session dir: {manager.paths.session_dir(session_id)}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Item")
    table.add_column("Value")

    result = manager.read_bridge_record(session_id)
    if result.status == "ok":
        record = result.record
        alive = manager.verify_process_identity(record)
        table.add_row("Bridge PID", str(record.pid))
        table.add_row("Alive", "[green]✓[/green]" if alive else "[red]✗[/red]")
        table.add_row("Socket", f"{record.socket_path} {'[green]✓[/green]' if is_socket(manager.paths.socket_path(session_id)) else '[red]✗[/red]'}")
        table.add_row("Started", record.started_at)
        table.add_row("Interpreter", f"{record.env.exec_path} ({record.env.kind})")
    elif result.status == "invalid":
        table.add_row("Bridge", f"[red]invalid record[/red] ({result.error})")
    else:
        table.add_row("Bridge", "[dim]not running[/dim]")

    lock = get_lock_status(session_id, paths=manager.paths, settings=lock_settings)
    if lock.locked:
        info = lock.lock_info
        table.add_row("Lock", f"PID {info.pid} on {info.hostname} since {info.acquired_at}")
        table.add_row("Lock breakable", "yes" if lock.can_break else "no")
    else:
        table.add_row("Lock", "[dim]free[/dim]")

    console.print(table)
