from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.infra.errors import ValidationError

BridgeType = Literal["ip", "serial"]

_PORT_MIN = 1
_PORT_MAX = 65535


class BridgeConfig(BaseModel):
    """A known bridge configuration. Owned by the ConfigStore.

    Endpoint fields are optional on the model so that incomplete records
    can still be listed; completeness is checked by validate_for_start().
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )

    id: str
    name: str = ""
    bridge_type: BridgeType = "ip"

    # IP bridges
    ip_host: str | None = None
    ip_port: int | None = None
    connection_mode: Literal["server", "client"] = "server"

    # Serial bridges
    serial_port: str | None = None
    baud_rate: int = 9600

    # Output side (both types)
    tcp_out_host: str | None = None
    tcp_out_port: int | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def missing_fields(self) -> list[str]:
        """Return human-readable problems with the endpoint fields (empty = complete)."""
        problems: list[str] = []
        if self.bridge_type == "ip":
            if not (self.ip_host or "").strip():
                problems.append("IP host required")
            if not _valid_port(self.ip_port):
                problems.append("Valid IP port required (1-65535)")
        else:
            if not (self.serial_port or "").strip():
                problems.append("Serial port required")
        if not (self.tcp_out_host or "").strip():
            problems.append("TCP output host required")
        if not _valid_port(self.tcp_out_port):
            problems.append("Valid TCP output port required (1-65535)")
        return problems

    def validate_for_start(self) -> None:
        """Raise ValidationError if required endpoint fields are missing."""
        problems = self.missing_fields()
        if problems:
            raise ValidationError(
                f"Invalid {self.bridge_type} configuration '{self.display_name}': "
                + ", ".join(problems)
            )


def _valid_port(port: int | None) -> bool:
    return port is not None and _PORT_MIN <= port <= _PORT_MAX
