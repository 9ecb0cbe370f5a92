"""Operator parameters shared read-only by every step of a run."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RunContext(BaseModel):
    """Immutable parameters collected before the first step runs.

    Steps read cross-step data such as the chosen SSH port from here rather
    than from process-wide state.
    """

    ssh_port: int = Field(default=22, ge=1, le=65535)
    current_ssh_port: int = Field(
        default=22, ge=1, le=65535, description="Port sshd is configured with before the run"
    )
    generate_keys: bool = False
    key_user: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_key_user(self) -> "RunContext":
        if self.generate_keys and not self.key_user:
            raise ValueError("key_user is required when generate_keys is set")
        return self

    @property
    def port_changes(self) -> bool:
        return self.ssh_port != self.current_ssh_port
