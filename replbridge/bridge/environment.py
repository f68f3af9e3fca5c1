"""Locate the interpreter and entry-point script a bridge is launched with."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

from loguru import logger

from replbridge.bridge.types import ExecEnv
from replbridge.utils.exceptions import BridgeSpawnError, EnvironmentNotFoundError

BRIDGE_SCRIPT_ENV = "REPLBRIDGE_BRIDGE_SCRIPT"

ENV_REMEDIATION = (
    "Create a virtual environment first:\n"
    "  python -m venv .venv\n"
    "  .venv/bin/pip install pandas numpy matplotlib"
)


def venv_python_path(project_dir: Path) -> Path:
    if sys.platform == "win32":
        return project_dir / ".venv" / "Scripts" / "python.exe"
    return project_dir / ".venv" / "bin" / "python"


def resolve_exec_env(project_dir: str | Path) -> ExecEnv:
    """
    Pick the interpreter for a project.

    Order: <project>/.venv interpreter, then python3/python on PATH.
    Nothing is ever installed or created.
    """
    root = Path(project_dir)
    venv_python = venv_python_path(root)
    if venv_python.exists():
        return ExecEnv(exec_path=str(venv_python), kind="venv")
    for name in ("python3", "python"):
        found = shutil.which(name)
        if found:
            logger.debug(f"No .venv under {root}; falling back to system interpreter {found}")
            return ExecEnv(exec_path=found, kind="system")
    raise EnvironmentNotFoundError(str(root), ENV_REMEDIATION)


def bundled_bridge_script() -> Path:
    return Path(__file__).resolve().parents[1] / "kernel" / "bridge_server.py"


def resolve_bridge_script(configured: str = "") -> Path:
    """Entry-point script: env override, then configured path, then the bundled kernel."""
    override = os.environ.get(BRIDGE_SCRIPT_ENV, "").strip() or (configured or "").strip()
    script = Path(override).expanduser() if override else bundled_bridge_script()
    if not script.is_file():
        raise BridgeSpawnError(f"Bridge script not found: {script}")
    return script
