"""ReconciliationLoop: periodic comparison of the LockStateTable with remote status.

The loop only ever adds entries (auto-discovery into an empty table). Locked
entries belong to the controller: disagreement with remote truth is reported
as a DriftDetected event and never repaired here.
"""

from __future__ import annotations

import structlog

from src.configs.store import ConfigStore
from src.constants import AUTO_DISCOVERED
from src.gateway.client import CommandGateway
from src.gateway.protocol import StatusSnapshot
from src.infra.errors import TransportError
from src.lifecycle.events import DisplayStateChanged, DriftDetected, EventBus
from src.lifecycle.lock_table import LockStateTable
from src.lifecycle.models import LifecycleState
from src.lifecycle.scheduler import RepeatingTask

logger = structlog.get_logger()

LOCKED_RUNNING_REMOTE_STOPPED = "locked_running_remote_stopped"
LOCKED_STOPPED_REMOTE_RUNNING = "locked_stopped_remote_running"


class ReconciliationLoop:
    """Polls query_status every interval and reconciles it with the table."""

    def __init__(
        self,
        table: LockStateTable,
        gateway: CommandGateway,
        config_store: ConfigStore | None = None,
        *,
        interval_s: float = 15.0,
        events: EventBus | None = None,
    ) -> None:
        self._table = table
        self._gateway = gateway
        self._configs = config_store
        self._events = events or EventBus()
        self._task = RepeatingTask(interval_s, self.tick, name="reconcile")
        self._reported_drift: dict[str, str] = {}
        # Remote-derived state of configurations that have no lock entry
        self.display_states: dict[str, LifecycleState] = {}

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        """Cancel the timer and write a final snapshot."""
        await self._task.stop()
        self._table.flush()

    async def tick(self) -> StatusSnapshot | None:
        """One reconciliation pass. Poll failures are logged and skipped."""
        generation = self._table.generation
        snapshot = await self._poll()
        if snapshot is None:
            return None

        # The table changed while the poll was in flight; the snapshot may predate it.
        if self._table.generation == generation:
            adopted = self._adopt_orphans(snapshot)
        else:
            adopted = 0
            logger.debug("reconcile_adoption_skipped", reason="table_changed_during_poll")
        self._check_locked(snapshot)
        self._update_display_states(snapshot)

        if adopted or not self._table.is_empty():
            self._table.flush()
        logger.debug(
            "reconcile_tick",
            remote_running=len(snapshot.running_instances()),
            locked=len(self._table),
            adopted=adopted,
        )
        return snapshot

    async def sync_after_load(self) -> StatusSnapshot | None:
        """Startup pass after a configuration load: report drift, set display states."""
        snapshot = await self._poll()
        if snapshot is None:
            return None
        self._check_locked(snapshot)
        self._update_display_states(snapshot)
        logger.info(
            "reconcile_synced_after_load",
            total=snapshot.total_instances,
            active=snapshot.active_instances,
            locked=len(self._table),
        )
        return snapshot

    async def _poll(self) -> StatusSnapshot | None:
        try:
            return await self._gateway.query_status()
        except TransportError as exc:
            logger.warning("reconcile_tick_failed", kind=exc.kind.value, error=str(exc))
            return None

    def _adopt_orphans(self, snapshot: StatusSnapshot) -> int:
        """Lock every running remote instance as running when the table is empty."""
        running = snapshot.running_instances()
        if not running or not self._table.is_empty():
            return 0

        known = {c.id: c for c in self._configs.configs()} if self._configs is not None else {}
        adopted = 0
        for instance in running:
            if instance.config_id in self._table:
                continue
            if known:
                config = known.get(instance.config_id)
                if config is None or config.bridge_type != instance.type:
                    continue
                name = config.display_name
            else:
                name = instance.config_name or instance.config_id
            self._table.lock(
                instance.config_id,
                LifecycleState.running,
                AUTO_DISCOVERED,
                config_name=name,
                bridge_type=instance.type,
            )
            self.display_states.pop(instance.config_id, None)
            adopted += 1

        if adopted:
            logger.info("reconcile_auto_discovered", count=adopted)
        return adopted

    def _check_locked(self, snapshot: StatusSnapshot) -> None:
        for entry in self._table:
            if entry.is_transient:
                self._reported_drift.pop(entry.config_id, None)
                continue
            remote_running = snapshot.is_running(entry.config_id, entry.bridge_type)
            kind = None
            if entry.state is LifecycleState.running and not remote_running:
                kind = LOCKED_RUNNING_REMOTE_STOPPED
            elif entry.state is LifecycleState.stopped and remote_running:
                kind = LOCKED_STOPPED_REMOTE_RUNNING

            if kind is None:
                self._reported_drift.pop(entry.config_id, None)
                continue
            if self._reported_drift.get(entry.config_id) == kind:
                continue
            self._reported_drift[entry.config_id] = kind
            logger.warning(
                "reconcile_drift_detected",
                config_id=entry.config_id,
                name=entry.config_name,
                locked=entry.state.value,
                remote_running=remote_running,
                kind=kind,
            )
            self._events.emit(
                DriftDetected(
                    config_id=entry.config_id,
                    locked_state=entry.state,
                    remote_running=remote_running,
                    kind=kind,
                )
            )

        for config_id in list(self._reported_drift):
            if config_id not in self._table:
                del self._reported_drift[config_id]

    def _update_display_states(self, snapshot: StatusSnapshot) -> None:
        if self._configs is None:
            return
        seen: set[str] = set()
        for config in self._configs.configs():
            if config.id in self._table:
                continue
            seen.add(config.id)
            state = (
                LifecycleState.running
                if snapshot.is_running(config.id, config.bridge_type)
                else LifecycleState.stopped
            )
            old = self.display_states.get(config.id)
            if old is state:
                continue
            self.display_states[config.id] = state
            logger.info(
                "reconcile_display_state_changed",
                config_id=config.id,
                old=old.value if old is not None else None,
                new=state.value,
            )
            self._events.emit(DisplayStateChanged(config_id=config.id, old_state=old, new_state=state))

        for config_id in list(self.display_states):
            if config_id not in seen:
                del self.display_states[config_id]
