"""Types for bridge lifecycle management."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr

EnvKind = Literal["venv", "system"]


class ExecEnv(BaseModel):
    """Interpreter a bridge runs under."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    exec_path: StrictStr = Field(alias="execPath", min_length=1)
    kind: EnvKind


class BridgeRecord(BaseModel):
    """Persisted description of the live bridge for one session (bridge_meta.json)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pid: StrictInt = Field(gt=0)
    socket_path: StrictStr = Field(alias="socketPath", min_length=1)
    started_at: StrictStr = Field(alias="startedAt")
    session_id: StrictStr = Field(alias="sessionId")
    env: ExecEnv
    process_start_time: StrictInt | StrictFloat | None = Field(default=None, alias="processStartTime")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def __str__(self) -> str:
        return json.dumps(self.to_payload())


@dataclass(slots=True)
class RecordReadResult:
    """Tagged outcome of reading a bridge record from disk."""

    status: Literal["missing", "invalid", "ok"]
    record: BridgeRecord | None = None
    error: str | None = None


@dataclass(slots=True)
class EscalationResult:
    """Outcome of a terminate-with-escalation run."""

    terminated: bool
    terminated_by: Literal["SIGINT", "SIGTERM", "SIGKILL"] | None = None
    termination_time_ms: int = 0
    already_gone: bool = False
