"""Lock-state persistence: durable, best-effort snapshot of the LockStateTable.

Responsibilities:
- Serialize the full table plus save time under a single key
- Discard (and clear) snapshots older than the TTL, or unreadable ones
- Never propagate storage failures: every I/O error degrades to empty state
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol

import structlog

from src.constants import LOCK_STATE_KEY, LOCK_STATE_TTL_S
from src.infra.errors import PersistenceFailure
from src.lifecycle.models import LockEntry

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """Generic durable key-value store."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryStore:
    """Process-local KeyValueStore."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore:
    """KeyValueStore backed by one JSON object on disk.

    Writes go to a sibling temp file and are atomically renamed into place.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    def get(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data, _ = self._read_for_write()
        data[key] = value
        self._write_all(data)

    def remove(self, key: str) -> None:
        data, discarded = self._read_for_write()
        if key in data or discarded:
            data.pop(key, None)
            self._write_all(data)

    def _read_for_write(self) -> tuple[dict[str, object], bool]:
        """Current document, or an empty one if the file cannot be parsed."""
        try:
            return self._read_all(), False
        except ValueError as exc:
            logger.warning("lock_state_file_discarded", path=str(self._path), error=str(exc))
            return {}, True

    def _read_all(self) -> dict[str, object]:
        if not self._path.exists():
            return {}
        raw = self._path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"{self._path} does not contain a JSON object")
        return data

    def _write_all(self, data: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)


class LockStatePersistence:
    """Save/load/clear the lock-state snapshot with a TTL."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = LOCK_STATE_KEY,
        ttl_s: float = LOCK_STATE_TTL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._key = key
        self._ttl_s = ttl_s
        self._clock = clock

    def save(self, entries: Mapping[str, LockEntry]) -> bool:
        """Write the whole table. Returns False (after logging) on failure."""
        snapshot = {
            "entries": {cid: entry.to_dict() for cid, entry in entries.items()},
            "saved_at": self._clock(),
        }
        try:
            self._store.set(self._key, json.dumps(snapshot))
        except Exception as exc:
            _log_failure("lock_state_save_failed", exc)
            return False
        logger.debug("lock_state_saved", count=len(entries))
        return True

    def load(self) -> dict[str, LockEntry]:
        """Read the snapshot back. Absent, unreadable or expired → {} (and key cleared)."""
        try:
            raw = self._store.get(self._key)
        except Exception as exc:
            _log_failure("lock_state_load_failed", exc)
            self.clear()
            return {}
        if raw is None:
            return {}

        try:
            snapshot = json.loads(raw)
            saved_at = float(snapshot["saved_at"])
            raw_entries = snapshot["entries"]
            if not isinstance(raw_entries, dict):
                raise ValueError("entries must be an object")
        except (ValueError, KeyError, TypeError) as exc:
            _log_failure("lock_state_unparseable", exc)
            self.clear()
            return {}

        age = self._clock() - saved_at
        if age > self._ttl_s:
            logger.info("lock_state_expired", age_s=round(age), ttl_s=self._ttl_s)
            self.clear()
            return {}

        entries: dict[str, LockEntry] = {}
        for config_id, data in raw_entries.items():
            try:
                entry = LockEntry.from_dict(data)
            except (ValueError, KeyError, TypeError):
                logger.warning("lock_state_entry_dropped", config_id=config_id)
                continue
            entries[entry.config_id] = entry

        logger.info("lock_state_restored", count=len(entries), age_s=round(age))
        for entry in entries.values():
            logger.debug(
                "lock_state_restored_entry",
                config_id=entry.config_id,
                name=entry.config_name,
                state=entry.state.value,
                reason=entry.reason,
            )
        return entries

    def clear(self) -> None:
        try:
            self._store.remove(self._key)
        except Exception as exc:
            _log_failure("lock_state_clear_failed", exc)
            return
        logger.debug("lock_state_cleared")


def _log_failure(event: str, exc: Exception) -> None:
    failure = PersistenceFailure(f"{type(exc).__name__}: {exc}")
    logger.warning(event, code=failure.code, error=str(failure))
