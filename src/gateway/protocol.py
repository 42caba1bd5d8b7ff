"""Wire models for the remote control API (JSON, camelCase)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.constants import REMOTE_RUNNING


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StartForwardingRequest(_CamelModel):
    type: str
    config_id: str


class StopInstanceRequest(_CamelModel):
    instance_id: str


class CommandResult(_CamelModel):
    """Generic acknowledgement returned by start/stop/emergency endpoints."""

    success: bool = True
    message: str = ""
    instance_id: str | None = None
    total_instances: int | None = None
    active_instances: int | None = None


class RemoteInstance(_CamelModel):
    """Read-only snapshot of one remote forwarding process."""

    config_id: str
    type: str
    status: str
    instance_id: str | None = None
    config_name: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == REMOTE_RUNNING


class StatusSnapshot(_CamelModel):
    """Authoritative remote status as returned by GET /api/status."""

    total_instances: int = 0
    active_instances: int = 0
    instances: list[RemoteInstance] = Field(default_factory=list)

    def running_instances(self) -> list[RemoteInstance]:
        return [inst for inst in self.instances if inst.is_running]

    def find(self, config_id: str, bridge_type: str) -> RemoteInstance | None:
        for inst in self.instances:
            if inst.config_id == config_id and inst.type == bridge_type:
                return inst
        return None

    def is_running(self, config_id: str, bridge_type: str) -> bool:
        """True if config_id has a running instance of the given type."""
        return any(
            inst.config_id == config_id and inst.type == bridge_type and inst.is_running
            for inst in self.instances
        )


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error: str | None = None
    message: str | None = None

    def text(self) -> str:
        return self.error or self.message or ""


def parse_error_body(payload: Any) -> str:
    """Extract the human error message from an error response payload."""
    if isinstance(payload, dict):
        return ErrorBody.model_validate(payload).text()
    if isinstance(payload, str):
        return payload
    return ""
