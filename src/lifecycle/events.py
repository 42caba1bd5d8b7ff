from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from src.lifecycle.models import LifecycleState

logger = structlog.get_logger()


@dataclass(frozen=True)
class StateTransition:
    """A lock entry changed state (or was removed: new_state=stopped)."""

    config_id: str
    old_state: LifecycleState
    new_state: LifecycleState
    reason: str


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a stop verification or post-start diagnostic check."""

    config_id: str
    expected: LifecycleState
    verified: bool
    attempt: int
    observed: str = ""  # remote status, or "not found"
    authoritative: bool = True  # False for the post-start diagnostic


@dataclass(frozen=True)
class DriftDetected:
    """Locked belief and remote truth disagree. Diagnostic only."""

    config_id: str
    locked_state: LifecycleState
    remote_running: bool
    kind: str  # "locked_running_remote_stopped" | "locked_stopped_remote_running"


@dataclass(frozen=True)
class DisplayStateChanged:
    """Remote-derived state of an unlocked configuration changed."""

    config_id: str
    old_state: LifecycleState | None
    new_state: LifecycleState


LifecycleEvent = StateTransition | VerificationResult | DriftDetected | DisplayStateChanged

EventListener = Callable[[LifecycleEvent], None]


class EventBus:
    """Synchronous fan-out of lifecycle events to presentation listeners."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: LifecycleEvent) -> None:
        # Listener errors are logged, never propagated to the lifecycle operation
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("event_listener_failed", event_type=type(event).__name__)
