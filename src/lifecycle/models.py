from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class LifecycleState(StrEnum):
    """Client-side belief about a bridge configuration's lifecycle phase."""

    stopped = "stopped"
    starting = "starting"
    running = "running"
    stopping = "stopping"
    verifying = "verifying"


# Entries in these states belong to an in-flight controller operation.
TRANSIENT_STATES = frozenset(
    {LifecycleState.starting, LifecycleState.stopping, LifecycleState.verifying}
)


@dataclass
class LockEntry:
    """Durable belief about one configuration. At most one per config_id."""

    config_id: str
    state: LifecycleState
    reason: str
    timestamp: float = field(default_factory=time.time)
    persistent: bool = True
    config_name: str = ""
    bridge_type: str = "ip"

    @property
    def is_transient(self) -> bool:
        return self.state in TRANSIENT_STATES

    @property
    def instance_id(self) -> str:
        """Backend instance identifier for targeted stop."""
        return f"{self.bridge_type}_{self.config_id}"

    def age_seconds(self, now: float | None = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "state": self.state.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "persistent": self.persistent,
            "config_name": self.config_name,
            "bridge_type": self.bridge_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockEntry:
        """Rebuild an entry from its snapshot form. Raises KeyError/ValueError on bad data."""
        return cls(
            config_id=str(data["config_id"]),
            state=LifecycleState(data["state"]),
            reason=str(data.get("reason", "")),
            timestamp=float(data["timestamp"]),
            persistent=bool(data.get("persistent", True)),
            config_name=str(data.get("config_name", "")),
            bridge_type=str(data.get("bridge_type", "ip")),
        )
