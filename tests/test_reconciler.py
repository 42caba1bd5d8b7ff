"""Tests for ReconciliationLoop: auto-discovery, drift diagnostics, display states."""

from __future__ import annotations

import asyncio

import pytest

from src.configs.store import StaticConfigStore
from src.infra.errors import ErrorKind, TransportError
from src.lifecycle.events import DisplayStateChanged, DriftDetected
from src.lifecycle.models import LifecycleState
from src.lifecycle.reconciler import (
    LOCKED_RUNNING_REMOTE_STOPPED,
    LOCKED_STOPPED_REMOTE_RUNNING,
    ReconciliationLoop,
)


@pytest.fixture
def loop(table, gateway, config_store, events) -> ReconciliationLoop:
    bus, _ = events
    return ReconciliationLoop(table, gateway, config_store, interval_s=0.01, events=bus)


class TestAutoDiscovery:
    @pytest.mark.asyncio
    async def test_empty_table_adopts_running_instance(
        self, loop, table, gateway, snapshot_of, kv, persisted_ids
    ):
        gateway.query_status.return_value = snapshot_of(("cfg1", "ip", "running"))
        await loop.tick()

        assert len(table) == 1
        entry = table.get("cfg1")
        assert entry.state is LifecycleState.running
        assert entry.reason == "auto_discovered"
        assert entry.config_name == "Bridge cfg1"
        assert persisted_ids(kv) == {"cfg1"}

    @pytest.mark.asyncio
    async def test_no_adoption_when_table_not_empty(self, loop, table, gateway, snapshot_of):
        table.lock("cfg2", LifecycleState.running, "start_successful")
        gateway.query_status.return_value = snapshot_of(
            ("cfg1", "ip", "running"), ("cfg2", "ip", "running")
        )
        await loop.tick()
        assert "cfg1" not in table

    @pytest.mark.asyncio
    async def test_type_mismatch_is_not_adopted(self, loop, table, gateway, snapshot_of):
        gateway.query_status.return_value = snapshot_of(("cfg1", "serial", "running"))
        await loop.tick()
        assert table.is_empty()

    @pytest.mark.asyncio
    async def test_stopped_instances_are_ignored(self, loop, table, gateway, snapshot_of):
        gateway.query_status.return_value = snapshot_of(("cfg1", "ip", "stopped"))
        await loop.tick()
        assert table.is_empty()

    @pytest.mark.asyncio
    async def test_adopts_any_running_instance_without_known_configs(
        self, table, gateway, snapshot_of
    ):
        loop = ReconciliationLoop(table, gateway, StaticConfigStore())
        gateway.query_status.return_value = snapshot_of(("orphan", "serial", "running"))
        await loop.tick()
        entry = table.get("orphan")
        assert entry is not None
        assert entry.bridge_type == "serial"
        assert entry.reason == "auto_discovered"

    @pytest.mark.asyncio
    async def test_unlock_during_poll_blocks_adoption(self, loop, table, gateway, snapshot_of):
        table.lock("cfg1", LifecycleState.verifying, "stop_requested")
        gate = asyncio.Event()

        async def slow_status():
            await gate.wait()
            return snapshot_of(("cfg1", "ip", "running"))

        gateway.query_status.side_effect = slow_status
        task = asyncio.create_task(loop.tick())
        await asyncio.sleep(0)
        table.unlock("cfg1", "stop_verified")
        gate.set()
        await task

        assert "cfg1" not in table
        gateway.query_status.side_effect = None
        gateway.query_status.return_value = snapshot_of(("cfg1", "ip", "running"))
        await loop.tick()
        assert table.get("cfg1").reason == "auto_discovered"


class TestLockedEntries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state", [LifecycleState.starting, LifecycleState.stopping, LifecycleState.verifying]
    )
    async def test_transient_entries_never_mutated(
        self, loop, table, gateway, snapshot_of, events, state
    ):
        _, received = events
        table.lock("cfg1", state, "in_flight")
        before = table.get("cfg1")
        received.clear()

        for remote in (snapshot_of(), snapshot_of(("cfg1", "ip", "running"))):
            gateway.query_status.return_value = remote
            await loop.tick()

        assert table.get("cfg1") == before
        assert not [e for e in received if isinstance(e, DriftDetected)]

    @pytest.mark.asyncio
    async def test_running_lock_without_remote_is_log_only(
        self, loop, table, gateway, snapshot_of, events
    ):
        _, received = events
        table.lock("cfg1", LifecycleState.running, "start_successful")
        gateway.query_status.return_value = snapshot_of()

        await loop.tick()
        await loop.tick()

        assert table.get("cfg1").state is LifecycleState.running
        drift = [e for e in received if isinstance(e, DriftDetected)]
        assert len(drift) == 1  # reported once until it clears
        assert drift[0].kind == LOCKED_RUNNING_REMOTE_STOPPED

    @pytest.mark.asyncio
    async def test_stopped_lock_with_remote_running(
        self, loop, table, gateway, snapshot_of, events
    ):
        _, received = events
        table.lock("cfg1", LifecycleState.stopped, "manual")
        gateway.query_status.return_value = snapshot_of(("cfg1", "ip", "running"))
        await loop.tick()
        drift = [e for e in received if isinstance(e, DriftDetected)]
        assert [d.kind for d in drift] == [LOCKED_STOPPED_REMOTE_RUNNING]
        assert table.get("cfg1").state is LifecycleState.stopped

    @pytest.mark.asyncio
    async def test_non_empty_table_is_flushed_each_tick(
        self, loop, table, gateway, snapshot_of, kv
    ):
        table.lock("cfg1", LifecycleState.running, "start_successful")
        kv.data.clear()
        gateway.query_status.return_value = snapshot_of(("cfg1", "ip", "running"))
        await loop.tick()
        assert "bridgectl.lock_states" in kv.data


class TestDisplayStates:
    @pytest.mark.asyncio
    async def test_unlocked_configs_get_remote_derived_state(
        self, loop, table, gateway, snapshot_of, events
    ):
        _, received = events
        table.lock("cfg2", LifecycleState.running, "start_successful")
        gateway.query_status.return_value = snapshot_of(("cfg2", "ip", "running"))
        await loop.tick()

        # cfg2 is locked, so only cfg1 gets a display state
        assert loop.display_states == {"cfg1": LifecycleState.stopped}
        changes = [e for e in received if isinstance(e, DisplayStateChanged)]
        assert [(c.config_id, c.old_state, c.new_state) for c in changes] == [
            ("cfg1", None, LifecycleState.stopped)
        ]

    @pytest.mark.asyncio
    async def test_display_state_change_emitted_once(
        self, loop, table, gateway, snapshot_of, events
    ):
        _, received = events
        table.lock("cfg2", LifecycleState.running, "start_successful")
        gateway.query_status.return_value = snapshot_of(("cfg2", "ip", "running"))
        await loop.tick()
        gateway.query_status.return_value = snapshot_of(
            ("cfg1", "ip", "running"), ("cfg2", "ip", "running")
        )
        await loop.tick()
        await loop.tick()

        changes = [e for e in received if isinstance(e, DisplayStateChanged)]
        assert [c.new_state for c in changes] == [LifecycleState.stopped, LifecycleState.running]
        assert "cfg1" not in table


class TestLoopLifecycle:
    @pytest.mark.asyncio
    async def test_poll_failure_is_swallowed(self, loop, table, gateway):
        gateway.query_status.side_effect = TransportError("down", kind=ErrorKind.network)
        assert await loop.tick() is None
        assert table.is_empty()

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_failures(self, loop, gateway, snapshot_of):
        gateway.query_status.side_effect = [
            TransportError("down", kind=ErrorKind.network),
            RuntimeError("unexpected"),
        ] + [snapshot_of()] * 50
        loop.start()
        for _ in range(100):
            if gateway.query_status.await_count >= 3:
                break
            await asyncio.sleep(0.01)
        await loop.stop()
        assert gateway.query_status.await_count >= 3
        assert not loop.running

    @pytest.mark.asyncio
    async def test_stop_flushes_final_snapshot(self, loop, table, kv):
        table.lock("cfg1", LifecycleState.running, "start_successful")
        kv.data.clear()
        loop.start()
        await loop.stop()
        assert "bridgectl.lock_states" in kv.data

    @pytest.mark.asyncio
    async def test_sync_after_load_reports_without_adopting(
        self, loop, table, gateway, snapshot_of
    ):
        gateway.query_status.return_value = snapshot_of(("cfg1", "ip", "running"))
        await loop.sync_after_load()
        assert table.is_empty()
        assert loop.display_states["cfg1"] is LifecycleState.running
        assert loop.display_states["cfg2"] is LifecycleState.stopped
