"""Session identity, on-disk layout and cross-process locking."""

from replbridge.session.lock import (
    LockAttempt,
    LockRecord,
    LockStatus,
    SessionLock,
    can_break_lock,
    get_lock_status,
    read_lock_file,
    with_lock,
)
from replbridge.session.paths import (
    SessionPaths,
    get_bridge_meta_path,
    get_bridge_socket_path,
    get_runtime_dir,
    get_session_dir,
    get_session_lock_path,
    shorten_session_id,
    validate_path_segment,
)

__all__ = [
    "LockAttempt",
    "LockRecord",
    "LockStatus",
    "SessionLock",
    "SessionPaths",
    "can_break_lock",
    "get_bridge_meta_path",
    "get_bridge_socket_path",
    "get_lock_status",
    "get_runtime_dir",
    "get_session_dir",
    "get_session_lock_path",
    "read_lock_file",
    "shorten_session_id",
    "validate_path_segment",
    "with_lock",
]
