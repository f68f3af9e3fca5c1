"""Pytest hooks and fixtures."""

import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

from replbridge.bridge.manager import BridgeManager
from replbridge.bridge.registry import BridgeRegistry
from replbridge.config.schema import BridgeConfig, Config, LockConfig
from replbridge.session.paths import SessionPaths

FIXTURES = Path(__file__).parent / "fixtures"


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line(
        "markers",
        "posix: needs Unix-domain sockets and process groups",
    )


def pytest_collection_modifyitems(config, items):
    """Skip posix tests on platforms without AF_UNIX / killpg."""
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="Requires Unix-domain sockets and process groups")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def runtime_root():
    """Short runtime root under /tmp so socket paths stay under the AF_UNIX limit."""
    base = "/tmp" if os.path.isdir("/tmp") else None
    root = Path(tempfile.mkdtemp(prefix="rb", dir=base))
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


@pytest.fixture
def paths(runtime_root):
    return SessionPaths(runtime_root=runtime_root)


@pytest.fixture
def fast_lock_config():
    return LockConfig(acquire_timeout=2.0, retry_interval=0.02, stale_age=60.0, remote_stale_age=300.0)


@pytest.fixture
def fast_bridge_config():
    return BridgeConfig(
        spawn_timeout=15.0,
        spawn_poll_interval=0.05,
        sigint_grace=1.0,
        sigterm_grace=0.5,
        sigkill_wait=2.0,
        exit_poll_interval=0.05,
    )


@pytest.fixture
def project_dir(tmp_path):
    """Project whose .venv/bin/python points at the running interpreter."""
    bin_dir = tmp_path / ".venv" / ("Scripts" if sys.platform == "win32" else "bin")
    bin_dir.mkdir(parents=True)
    target = bin_dir / ("python.exe" if sys.platform == "win32" else "python")
    target.symlink_to(sys.executable)
    return tmp_path


@pytest.fixture
def registry():
    return BridgeRegistry()


@pytest.fixture
def manager(paths, fast_bridge_config, registry, monkeypatch):
    monkeypatch.delenv("REPLBRIDGE_BRIDGE_SCRIPT", raising=False)
    mgr = BridgeManager(paths=paths, settings=fast_bridge_config, registry=registry)
    started: list[str] = []
    original_spawn = mgr.spawn_bridge

    def _tracking_spawn(session_id, project_dir=None):
        record = original_spawn(session_id, project_dir)
        started.append(session_id)
        return record

    mgr.spawn_bridge = _tracking_spawn
    try:
        yield mgr
    finally:
        for session_id in set(started):
            result = mgr.read_bridge_record(session_id)
            if result.status == "ok":
                mgr.settings = mgr.settings.model_copy(update={"sigint_grace": 0.2, "sigterm_grace": 0.2})
                mgr.kill_bridge_with_escalation(session_id)


@pytest.fixture
def config(fast_lock_config, fast_bridge_config):
    cfg = Config()
    cfg.lock = fast_lock_config
    cfg.bridge = fast_bridge_config
    return cfg
