"""Host-level process and filesystem primitives."""

from replbridge.infra.process import (
    get_process_start_time,
    is_process_alive,
    is_socket,
    is_valid_pid,
    kill_process_group,
    verify_process,
)

__all__ = [
    "get_process_start_time",
    "is_process_alive",
    "is_socket",
    "is_valid_pid",
    "kill_process_group",
    "verify_process",
]
