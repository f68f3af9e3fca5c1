"""CLI commands for replbridge.

Top-level commands drive the REPL service (exec, state, reset, interrupt) and
the bridge manager (stop, status); the `lock` group handles lock recovery.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console

from replbridge import __logo__, __version__
from replbridge.bridge.manager import BridgeManager
from replbridge.bridge.registry import BridgeRegistry
from replbridge.cli.command_groups.lock_command import register_lock_commands
from replbridge.cli.command_groups.status_command import status_command
from replbridge.cli.shared.logging_utils import ensure_rotating_log_file, remove_log_file_sink
from replbridge.config.schema import Config
from replbridge.repl.formatting import format_escalation
from replbridge.repl.service import ReplService
from replbridge.session.paths import SessionPaths, validate_path_segment
from replbridge.utils.exceptions import ValidationError

app = typer.Typer(
    name="replbridge",
    help=f"{__logo__} replbridge - persistent Python sessions over a local socket",
    no_args_is_help=True,
)

console = Console()

_SUCCESS_HEADERS = ("=== Python REPL",)


@dataclass
class CliState:
    config: Config
    paths: SessionPaths
    registry: BridgeRegistry

    def manager(self) -> BridgeManager:
        return BridgeManager(paths=self.paths, settings=self.config.bridge, registry=self.registry)

    def service(self) -> ReplService:
        return ReplService(manager=self.manager(), config=self.config)


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} replbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
    runtime_dir: Path = typer.Option(None, "--runtime-dir", help="Override the runtime root for session files"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Print debug logs to stderr"),
    logs: bool = typer.Option(True, "--logs/--no-logs", help="Write logs to ~/.replbridge/logs (or $REPLBRIDGE_LOG_DIR)"),
):
    """replbridge - persistent Python sessions."""
    from replbridge.config.access import get_config

    if debug:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG", format="<dim>{time:HH:mm:ss.SSS}</dim> | <level>{level: <8}</level> | <level>{message}</level>")
        logger.enable("replbridge")
        ensure_rotating_log_file("replbridge", level="DEBUG")
    elif logs:
        logger.remove()
        logger.enable("replbridge")
        ensure_rotating_log_file("replbridge", level="INFO")
    else:
        remove_log_file_sink("replbridge")
        logger.disable("replbridge")

    paths = SessionPaths(runtime_root=runtime_dir) if runtime_dir else SessionPaths.default()
    ctx.obj = CliState(config=get_config(), paths=paths, registry=BridgeRegistry())


def _emit(text: str) -> None:
    console.print(text, markup=False, highlight=False)
    if not text.startswith(_SUCCESS_HEADERS):
        raise typer.Exit(1)


def _check_session(session: str) -> None:
    try:
        validate_path_segment(session, "session")
    except ValidationError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(2)


@app.command("exec")
def exec_code(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
    code: str = typer.Argument(None, help="Python code to run"),
    file: Path = typer.Option(None, "--file", "-f", help="Read code from a file ('-' for stdin)"),
    label: str = typer.Option(None, "--label", "-l", help="Human-readable label for this execution"),
    timeout: float = typer.Option(None, "--timeout", "-t", help="Execution timeout in seconds"),
    queue_timeout: float = typer.Option(None, "--queue-timeout", help="Seconds to wait for the session lock"),
    project_dir: Path = typer.Option(None, "--project-dir", "-p", help="Project containing .venv/ (default: cwd)"),
):
    """Execute code in the session's persistent namespace."""
    if file is not None:
        code = sys.stdin.read() if str(file) == "-" else file.read_text(encoding="utf-8")
    payload = {
        "action": "execute",
        "session_id": session,
        "code": code,
        "execution_label": label,
        "execution_timeout": timeout,
        "queue_timeout": queue_timeout,
        "project_dir": str(project_dir) if project_dir else None,
    }
    _emit(ctx.obj.service().handle(payload))


@app.command()
def state(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
    project_dir: Path = typer.Option(None, "--project-dir", "-p", help="Project containing .venv/"),
):
    """Show memory usage and user variables."""
    payload = {"action": "get_state", "session_id": session, "project_dir": str(project_dir) if project_dir else None}
    _emit(ctx.obj.service().handle(payload))


@app.command()
def reset(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
    project_dir: Path = typer.Option(None, "--project-dir", "-p", help="Project containing .venv/"),
):
    """Clear the session namespace."""
    payload = {"action": "reset", "session_id": session, "project_dir": str(project_dir) if project_dir else None}
    _emit(ctx.obj.service().handle(payload))


@app.command()
def interrupt(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
    project_dir: Path = typer.Option(None, "--project-dir", "-p", help="Project containing .venv/"),
):
    """Interrupt running code, escalating to signals if the bridge does not respond."""
    payload = {"action": "interrupt", "session_id": session, "project_dir": str(project_dir) if project_dir else None}
    _emit(ctx.obj.service().handle(payload))


@app.command()
def stop(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
    grace: float = typer.Option(None, "--grace", help="Seconds to wait after SIGINT"),
):
    """Terminate the session's bridge (SIGINT, then SIGTERM, then SIGKILL)."""
    _check_session(session)
    result = ctx.obj.manager().kill_bridge_with_escalation(session, grace)
    console.print(format_escalation(session, result), markup=False, highlight=False)
    if not result.terminated:
        raise typer.Exit(1)


@app.command()
def status(
    ctx: typer.Context,
    session: str = typer.Argument(..., help="Session id"),
):
    """Show bridge and lock status for a session."""
    _check_session(session)
    state_obj: CliState = ctx.obj
    status_command(console, state_obj.manager(), session, state_obj.config.lock)


register_lock_commands(app, console)


if __name__ == "__main__":
    app()
