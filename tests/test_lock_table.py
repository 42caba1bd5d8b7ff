"""Tests for LockStateTable write-through and events."""

from __future__ import annotations

from src.lifecycle.events import StateTransition
from src.lifecycle.lock_table import LockStateTable
from src.lifecycle.models import LifecycleState
from src.lifecycle.persistence import InMemoryStore, LockStatePersistence


class TestLockUnlock:
    def test_lock_upserts_single_entry(self, table, kv, persisted_ids) -> None:
        table.lock("a", LifecycleState.starting, "start_requested", config_name="A")
        table.lock("a", LifecycleState.running, "start_successful")

        assert len(table) == 1
        entry = table.get("a")
        assert entry.state is LifecycleState.running
        assert entry.config_name == "A"  # kept from the previous entry
        assert persisted_ids(kv) == {"a"}

    def test_bridge_type_is_preserved_across_locks(self, table) -> None:
        table.lock("a", LifecycleState.starting, bridge_type="serial")
        table.lock("a", LifecycleState.running)
        assert table.get("a").bridge_type == "serial"
        assert table.get("a").instance_id == "serial_a"

    def test_unlock_removes_and_persists(self, table, kv, persisted_ids) -> None:
        table.lock("a", LifecycleState.running)
        assert table.unlock("a", "stop_verified") is True
        assert "a" not in table
        assert persisted_ids(kv) == set()

    def test_unlock_missing_is_noop(self, table, kv) -> None:
        assert table.unlock("ghost") is False
        assert kv.data == {}

    def test_generation_counts_mutations(self, table) -> None:
        start = table.generation
        table.lock("a", LifecycleState.running)
        table.unlock("missing")
        table.unlock("a")
        table.clear()
        assert table.generation == start + 3

    def test_state_of_unknown_is_stopped(self, table) -> None:
        assert table.state_of("ghost") is LifecycleState.stopped

    def test_force_unlock(self, table) -> None:
        table.lock("a", LifecycleState.verifying)
        assert table.force_unlock("a") is True
        assert table.force_unlock("a") is False

    def test_events_report_old_and_new_state(self, table, events) -> None:
        _, received = events
        table.lock("a", LifecycleState.starting, "start_requested")
        table.lock("a", LifecycleState.running, "start_successful")
        table.unlock("a", "stop_verified")

        assert received == [
            StateTransition("a", LifecycleState.stopped, LifecycleState.starting, "start_requested"),
            StateTransition("a", LifecycleState.starting, LifecycleState.running, "start_successful"),
            StateTransition("a", LifecycleState.running, LifecycleState.stopped, "stop_verified"),
        ]


class TestRestoreAndFlush:
    def test_restore_from_snapshot(self) -> None:
        kv = InMemoryStore()
        first = LockStateTable(LockStatePersistence(kv))
        first.lock("a", LifecycleState.running, "start_successful", config_name="A")
        first.lock("b", LifecycleState.verifying, "stop_verifying")

        restored = LockStateTable.restore(LockStatePersistence(kv))
        assert {e.config_id for e in restored} == {"a", "b"}
        assert restored.get("b").state is LifecycleState.verifying

    def test_clear_drops_snapshot(self, table, kv) -> None:
        table.lock("a", LifecycleState.running)
        table.clear()
        assert table.is_empty()
        assert kv.data == {}

    def test_table_without_persistence(self) -> None:
        table = LockStateTable()
        table.lock("a", LifecycleState.running)
        assert table.flush() is True

    def test_summary(self) -> None:
        clock_value = [1000.0]
        table = LockStateTable(clock=lambda: clock_value[0])
        table.lock("a", LifecycleState.running, "auto_discovered", config_name="A")
        clock_value[0] += 42
        assert table.summary() == [
            {
                "config_id": "a",
                "config_name": "A",
                "state": "running",
                "reason": "auto_discovered",
                "persistent": True,
                "age_s": 42,
            }
        ]
