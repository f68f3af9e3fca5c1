"""Configuration schema using Pydantic.

Single data model and defaults, persisted to ~/.replbridge/config.json.
All durations are in seconds.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class LockConfig(BaseModel):
    """Session lock timing."""
    acquire_timeout: float = Field(default=30.0, gt=0)
    retry_interval: float = Field(default=0.1, gt=0)
    stale_age: float = Field(default=60.0, ge=0)  # Local locks: breakable only after this age
    remote_stale_age: float = Field(default=300.0, ge=0)  # Other-host locks: liveness unverifiable


class BridgeConfig(BaseModel):
    """Bridge subprocess lifecycle."""
    spawn_timeout: float = Field(default=30.0, gt=0)
    spawn_poll_interval: float = Field(default=0.1, gt=0)
    sigint_grace: float = Field(default=5.0, ge=0)
    sigterm_grace: float = Field(default=2.5, ge=0)
    sigkill_wait: float = Field(default=1.0, ge=0)
    exit_poll_interval: float = Field(default=0.1, gt=0)
    stderr_cap_chars: int = Field(default=64 * 1024, gt=0)
    bridge_script: str = ""  # Interpreter entry point; empty = bundled kernel


class TransportConfig(BaseModel):
    """Socket transport bounds."""
    default_timeout: float = Field(default=60.0, gt=0)
    max_response_bytes: int = Field(default=2 * 1024 * 1024, gt=0)


class ReplConfig(BaseModel):
    """Per-action timeouts for the REPL service."""
    execution_timeout: float = Field(default=300.0, gt=0)
    queue_timeout: float = Field(default=30.0, gt=0)
    response_slack: float = Field(default=10.0, ge=0)  # Added on top of execution_timeout for the reply
    reset_timeout: float = Field(default=10.0, gt=0)
    state_timeout: float = Field(default=5.0, gt=0)
    interrupt_timeout: float = Field(default=5.0, gt=0)


class Config(BaseSettings):
    """Root configuration for replbridge."""
    lock: LockConfig = Field(default_factory=LockConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    repl: ReplConfig = Field(default_factory=ReplConfig)

    model_config = ConfigDict(
        env_prefix="REPLBRIDGE_",
        env_nested_delimiter="__"
    )
