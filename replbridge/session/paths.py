"""Session path resolution and path-segment validation.

Session directories live under a per-user runtime root outside the project:

    <runtime_root>/<short_id>/bridge.sock
    <runtime_root>/<short_id>/bridge_meta.json
    <runtime_root>/<short_id>/session.lock

``short_id`` is always a hash of the caller's session id, so crafted ids such
as ``../x`` can never influence where files land.
"""

from __future__ import annotations

import hashlib
import os
import stat
import sys
import tempfile
import unicodedata
from dataclasses import dataclass
from pathlib import Path

from replbridge.utils.exceptions import ValidationError

APP_DIR_NAME = "replbridge"
SHORT_SESSION_ID_LENGTH = 12
# AF_UNIX limit is 108 bytes on Linux and 104 on macOS.
MAX_SOCKET_PATH_BYTES = 100
MAX_SEGMENT_BYTES = 255

SOCKET_FILE_NAME = "bridge.sock"
META_FILE_NAME = "bridge_meta.json"
LOCK_FILE_NAME = "session.lock"

WINDOWS_RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)


def is_secure_runtime_dir(path: str) -> bool:
    """Absolute, real directory (no symlink), owned by us, mode exactly 0700."""
    if not path or not os.path.isabs(path):
        return False
    try:
        st = os.lstat(path)
    except OSError:
        return False
    if stat.S_ISLNK(st.st_mode) or not stat.S_ISDIR(st.st_mode):
        return False
    getuid = getattr(os, "getuid", None)
    if getuid is None or st.st_uid != getuid():
        return False
    return (st.st_mode & 0o777) == 0o700


def resolve_runtime_root() -> Path:
    """
    Resolve the runtime root for ephemeral session data.

    Priority:
    1. $XDG_RUNTIME_DIR/replbridge, only if XDG_RUNTIME_DIR passes is_secure_runtime_dir
    2. Platform user cache location
    3. tempfile.gettempdir() fallback
    """
    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", "")
    if xdg_runtime and is_secure_runtime_dir(xdg_runtime):
        return Path(xdg_runtime) / APP_DIR_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / APP_DIR_NAME / "runtime"
    if sys.platform.startswith("linux"):
        return Path("/tmp") / APP_DIR_NAME / "runtime"
    if sys.platform == "win32":
        local_app_data = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(local_app_data) / APP_DIR_NAME / "runtime"
    return Path(tempfile.gettempdir()) / APP_DIR_NAME / "runtime"


def shorten_session_id(session_id: str) -> str:
    """SHA-256 of the session id truncated to 12 hex chars. Always hashes, even short ids."""
    return hashlib.sha256(session_id.encode("utf-8", errors="surrogatepass")).hexdigest()[:SHORT_SESSION_ID_LENGTH]


@dataclass(frozen=True)
class SessionPaths:
    """Pure path derivation for one runtime root."""

    runtime_root: Path

    @classmethod
    def default(cls) -> "SessionPaths":
        return cls(runtime_root=resolve_runtime_root())

    def session_dir(self, session_id: str) -> Path:
        return self.runtime_root / shorten_session_id(session_id)

    def socket_path(self, session_id: str) -> Path:
        path = self.session_dir(session_id) / SOCKET_FILE_NAME
        size = len(os.fsencode(str(path)))
        if size > MAX_SOCKET_PATH_BYTES:
            raise ValidationError(
                f"Socket path is {size} bytes, over the {MAX_SOCKET_PATH_BYTES}-byte limit: {path}. "
                "Use a shorter runtime directory.",
                field="socket_path",
            )
        return path

    def meta_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / META_FILE_NAME

    def lock_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / LOCK_FILE_NAME


def get_runtime_dir() -> Path:
    """Runtime root for the current environment."""
    return resolve_runtime_root()


def get_session_dir(session_id: str) -> Path:
    return SessionPaths.default().session_dir(session_id)


def get_bridge_socket_path(session_id: str) -> Path:
    return SessionPaths.default().socket_path(session_id)


def get_bridge_meta_path(session_id: str) -> Path:
    return SessionPaths.default().meta_path(session_id)


def get_session_lock_path(session_id: str) -> Path:
    return SessionPaths.default().lock_path(session_id)


def validate_path_segment(segment: object, name: str) -> None:
    """
    Validate that a path segment is safe to use in file paths.

    Raises ValidationError for empty/whitespace input, traversal characters,
    null bytes, more than 255 UTF-8 bytes, Windows reserved device names
    (checked on every platform) and trailing dots or spaces.
    """
    if not isinstance(segment, str) or not segment:
        raise ValidationError(f"{name} is required and must be a string", field=name)
    if not segment.strip():
        raise ValidationError(f"Invalid {name}: cannot be empty or whitespace", field=name)

    normalized = unicodedata.normalize("NFC", segment)

    if ".." in normalized or "/" in normalized or "\\" in normalized:
        raise ValidationError(f"Invalid {name}: contains path traversal characters", field=name)
    if "\0" in normalized:
        raise ValidationError(f"Invalid {name}: contains null byte", field=name)
    if len(normalized.encode("utf-8", errors="surrogatepass")) > MAX_SEGMENT_BYTES:
        raise ValidationError(f"Invalid {name}: exceeds maximum length of {MAX_SEGMENT_BYTES} bytes", field=name)

    # "COM1.txt", "NUL ..txt" and "con " all reduce to a reserved base name.
    base_name = normalized.upper().split(".")[0].rstrip(" .")
    if base_name in WINDOWS_RESERVED_NAMES:
        raise ValidationError(f"{name} contains Windows reserved name: {segment}", field=name)

    if normalized.endswith(".") or normalized.endswith(" "):
        raise ValidationError(f"{name} has trailing dot or space: {segment}", field=name)
