"""Input model for REPL requests."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ReplAction = Literal["execute", "interrupt", "reset", "get_state"]


class ReplRequest(BaseModel):
    """
    One REPL call. Timeouts are in seconds; None means the configured default.

    Accepts both snake_case names and the camelCase aliases used by tool callers
    (researchSessionID, executionLabel, executionTimeout, queueTimeout, projectDir).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: ReplAction
    session_id: str = Field(alias="researchSessionID", min_length=1)
    code: str | None = None
    execution_label: str | None = Field(default=None, alias="executionLabel")
    execution_timeout: float | None = Field(default=None, alias="executionTimeout", gt=0)
    queue_timeout: float | None = Field(default=None, alias="queueTimeout", gt=0)
    project_dir: str | None = Field(default=None, alias="projectDir")
