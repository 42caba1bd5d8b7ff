"""LockStateTable: the client's belief about each configuration's lifecycle phase.

One table instance is shared by reference between the LifecycleController
and the ReconciliationLoop. Every mutation is written through to the
persistence layer; persistence is best-effort and never raises here.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any

import structlog

from src.lifecycle.events import EventBus, StateTransition
from src.lifecycle.models import LifecycleState, LockEntry
from src.lifecycle.persistence import LockStatePersistence

logger = structlog.get_logger()


class LockStateTable:
    """In-memory map of config_id → LockEntry with write-through persistence."""

    def __init__(
        self,
        persistence: LockStatePersistence | None = None,
        *,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: dict[str, LockEntry] = {}
        self._persistence = persistence
        self._events = events or EventBus()
        self._clock = clock
        self._generation = 0

    @classmethod
    def restore(
        cls,
        persistence: LockStatePersistence,
        *,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> LockStateTable:
        """Build a table pre-populated from the persisted snapshot (if still valid)."""
        table = cls(persistence, events=events, clock=clock)
        table._entries = persistence.load()
        return table

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, config_id: object) -> bool:
        return config_id in self._entries

    def __iter__(self) -> Iterator[LockEntry]:
        return iter(list(self._entries.values()))

    @property
    def generation(self) -> int:
        """Counter bumped by every lock, unlock and clear."""
        return self._generation

    def is_empty(self) -> bool:
        return not self._entries

    def get(self, config_id: str) -> LockEntry | None:
        return self._entries.get(config_id)

    def state_of(self, config_id: str) -> LifecycleState:
        """Locked state, or stopped when no entry exists."""
        entry = self._entries.get(config_id)
        return entry.state if entry is not None else LifecycleState.stopped

    def entries(self) -> dict[str, LockEntry]:
        """Shallow copy of the table for read-only consumers."""
        return dict(self._entries)

    def lock(
        self,
        config_id: str,
        state: LifecycleState,
        reason: str = "user_action",
        *,
        config_name: str | None = None,
        bridge_type: str | None = None,
    ) -> LockEntry:
        """Upsert the entry for config_id with a fresh timestamp, then persist."""
        previous = self._entries.get(config_id)
        name = config_name or (previous.config_name if previous else "") or config_id
        kind = bridge_type or (previous.bridge_type if previous else "ip")
        entry = LockEntry(
            config_id=config_id,
            state=state,
            reason=reason,
            timestamp=self._clock(),
            persistent=True,
            config_name=name,
            bridge_type=kind,
        )
        self._entries[config_id] = entry
        self._generation += 1
        logger.info("lock_acquired", config_id=config_id, name=name, state=state.value, reason=reason)
        self._persist()
        self._events.emit(
            StateTransition(
                config_id=config_id,
                old_state=previous.state if previous else LifecycleState.stopped,
                new_state=state,
                reason=reason,
            )
        )
        return entry

    def unlock(self, config_id: str, reason: str = "user_action") -> bool:
        """Remove the entry (implicitly stopped). Returns whether one existed."""
        entry = self._entries.pop(config_id, None)
        if entry is None:
            return False
        self._generation += 1
        logger.info("lock_released", config_id=config_id, name=entry.config_name, reason=reason)
        self._persist()
        self._events.emit(
            StateTransition(
                config_id=config_id,
                old_state=entry.state,
                new_state=LifecycleState.stopped,
                reason=reason,
            )
        )
        return True

    def force_unlock(self, config_id: str) -> bool:
        """Unconditional removal regardless of state."""
        return self.unlock(config_id, reason="force_unlock")

    def clear(self) -> None:
        """Drop every entry and the stored snapshot."""
        self._entries.clear()
        self._generation += 1
        if self._persistence is not None:
            self._persistence.clear()
        logger.info("lock_table_cleared")

    def flush(self) -> bool:
        """Save the current table. Returns False if the write failed."""
        if self._persistence is None:
            return True
        return self._persistence.save(self._entries)

    def summary(self) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            {
                "config_id": e.config_id,
                "config_name": e.config_name,
                "state": e.state.value,
                "reason": e.reason,
                "persistent": e.persistent,
                "age_s": round(e.age_seconds(now)),
            }
            for e in self._entries.values()
        ]

    def _persist(self) -> None:
        # Synchronous write on the event loop thread; callers never await it.
        if self._persistence is not None:
            self._persistence.save(self._entries)
