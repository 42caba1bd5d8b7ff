"""LifecycleController: start/stop/delete state machine over the LockStateTable.

Responsibilities:
- Guard every operation on the locked state before the first await
- Lock optimistically before calling the backend so intent survives restarts
- Escalate stop (targeted → global → emergency) and only report "stopped"
  once remote status confirms it
- Leave the controller usable after any failure
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.config.settings import LifecycleSettings
from src.configs.models import BridgeConfig
from src.configs.store import ConfigStore
from src.gateway.client import CommandGateway
from src.infra.errors import (
    AlreadyInProgressError,
    ConfirmationRequiredError,
    ErrorKind,
    InvalidStateError,
    NotFoundError,
    StopNotSupportedError,
    TransportError,
    VerificationFailure,
)
from src.lifecycle.events import EventBus, VerificationResult
from src.lifecycle.lock_table import LockStateTable
from src.lifecycle.models import LifecycleState, LockEntry
from src.lifecycle.scheduler import DelayedTask

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class LifecycleController:
    """Drives one FSM per configuration id; the per-id state lives in the table."""

    def __init__(
        self,
        table: LockStateTable,
        gateway: CommandGateway,
        config_store: ConfigStore,
        *,
        settings: LifecycleSettings | None = None,
        events: EventBus | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._table = table
        self._gateway = gateway
        self._configs = config_store
        self._settings = settings or LifecycleSettings()
        self._events = events or EventBus()
        self._sleep = sleep
        self._post_start_checks: dict[str, DelayedTask] = {}

    @property
    def table(self) -> LockStateTable:
        return self._table

    def state_of(self, config_id: str) -> LifecycleState:
        return self._table.state_of(config_id)

    # ── start ──

    async def start(self, config_id: str) -> LockEntry:
        """Start forwarding for config_id. Returns the resulting running entry.

        Raises AlreadyInProgressError, InvalidStateError, NotFoundError,
        ValidationError or TransportError. A failed start leaves no entry.
        """
        self._guard_start(config_id)

        config = self._configs.get(config_id)
        if config is None:
            await self._configs.ensure_fresh()
            # The refresh suspended; another caller may have moved this id on
            self._guard_start(config_id)
            config = self._configs.get(config_id)
            if config is None:
                raise NotFoundError(f"Configuration {config_id} not found")
        config.validate_for_start()

        self._table.lock(
            config_id,
            LifecycleState.starting,
            "start_requested",
            config_name=config.display_name,
            bridge_type=config.bridge_type,
        )
        try:
            await self._gateway.start(config.bridge_type, config_id)
        except TransportError as exc:
            self._table.unlock(config_id, "start_failed")
            logger.warning(
                "start_failed",
                config_id=config_id,
                name=config.display_name,
                kind=exc.kind.value,
                error=str(exc),
            )
            if exc.kind is ErrorKind.config_not_found:
                await self._configs.refresh()
                raise NotFoundError(
                    f"Configuration '{config.display_name}' no longer exists on the server"
                ) from exc
            raise
        except Exception:
            self._table.unlock(config_id, "start_error")
            logger.exception("start_error", config_id=config_id)
            raise

        entry = self._table.lock(config_id, LifecycleState.running, "start_successful")
        self._schedule_post_start_check(config)
        logger.info("start_completed", config_id=config_id, name=config.display_name)
        return entry

    def _guard_start(self, config_id: str) -> None:
        state = self._table.state_of(config_id)
        if state in (LifecycleState.starting, LifecycleState.running):
            raise AlreadyInProgressError(f"Configuration {config_id} is already {state.value}")
        if state is not LifecycleState.stopped:
            raise InvalidStateError(f"Cannot start {config_id} while {state.value}")

    def _schedule_post_start_check(self, config: BridgeConfig) -> None:
        previous = self._post_start_checks.pop(config.id, None)
        if previous is not None:
            previous.cancel()

        async def _check() -> None:
            self._post_start_checks.pop(config.id, None)
            await self._check_instance_state(config.id, config.bridge_type)

        task = DelayedTask(
            self._settings.post_start_check_delay_s, _check, name=f"post_start_check:{config.id}"
        )
        self._post_start_checks[config.id] = task
        task.start()

    async def _check_instance_state(self, config_id: str, bridge_type: str) -> None:
        """Non-authoritative: compare remote truth with `running` and report only."""
        try:
            snapshot = await self._gateway.query_status()
        except TransportError as exc:
            logger.warning("post_start_check_failed", config_id=config_id, kind=exc.kind.value)
            return
        instance = snapshot.find(config_id, bridge_type)
        observed = instance.status if instance is not None else "not found"
        verified = instance is not None and instance.is_running
        if not verified:
            logger.warning("post_start_state_mismatch", config_id=config_id, observed=observed)
        else:
            logger.debug("post_start_state_confirmed", config_id=config_id)
        self._events.emit(
            VerificationResult(
                config_id=config_id,
                expected=LifecycleState.running,
                verified=verified,
                attempt=1,
                observed=observed,
                authoritative=False,
            )
        )

    # ── stop ──

    async def stop(self, config_id: str) -> None:
        """Stop forwarding for config_id and wait until remote status confirms it.

        Raises InvalidStateError (not running), TransportError (every stop
        method failed) or VerificationFailure (instance still observed).
        In both failure cases the entry is reverted to running.
        """
        entry = self._table.get(config_id)
        if entry is None or entry.state is not LifecycleState.running:
            state = entry.state.value if entry is not None else LifecycleState.stopped.value
            raise InvalidStateError(f"Cannot stop {config_id} while {state}")

        self._cancel_post_start_check(config_id)
        self._table.lock(config_id, LifecycleState.stopping, "stop_requested")

        try:
            await self._issue_stop(entry.instance_id)
        except Exception:
            self._table.lock(config_id, LifecycleState.running, "stop_error")
            raise

        self._table.lock(config_id, LifecycleState.verifying, "stop_verifying")
        try:
            verified = await self._verify_stopped(
                config_id, entry.bridge_type, self._settings.verify_attempts
            )
        except Exception:
            self._table.lock(config_id, LifecycleState.running, "stop_error")
            raise

        if verified:
            self._table.unlock(config_id, "stop_verified")
            logger.info("stop_completed", config_id=config_id, name=entry.config_name)
            return

        self._table.lock(config_id, LifecycleState.running, "stop_verification_failed")
        logger.error(
            "stop_verification_failed",
            config_id=config_id,
            attempts=self._settings.verify_attempts,
        )
        raise VerificationFailure(
            f"Stop of '{entry.config_name or config_id}' could not be verified after "
            f"{self._settings.verify_attempts} attempts"
        )

    async def _issue_stop(self, instance_id: str) -> None:
        """Try targeted, global, then emergency stop. Raises the last TransportError."""
        methods: list[tuple[str, Callable[[], Awaitable[object]]]] = [
            ("stop_instance", lambda: self._gateway.stop_instance(instance_id)),
            ("stop_all", self._gateway.stop_all),
            ("emergency_stop_all", self._gateway.emergency_stop_all),
        ]
        last_error: TransportError | None = None
        for method, call in methods:
            try:
                await call()
            except StopNotSupportedError:
                logger.info("stop_method_not_supported", method=method, instance_id=instance_id)
                continue
            except TransportError as exc:
                logger.warning(
                    "stop_method_failed", method=method, instance_id=instance_id,
                    kind=exc.kind.value, error=str(exc),
                )
                last_error = exc
                continue
            logger.info("stop_issued", method=method, instance_id=instance_id)
            return

        kind = last_error.kind if last_error is not None else ErrorKind.unknown
        raise TransportError(
            f"All stop methods failed for {instance_id}"
            + (f": {last_error}" if last_error is not None else ""),
            kind=kind,
            status_code=last_error.status_code if last_error is not None else None,
        ) from last_error

    async def _verify_stopped(self, config_id: str, bridge_type: str, attempts: int) -> bool:
        """Poll until config_id has no running instance of bridge_type.

        Attempt i waits base * i first. A failed poll counts as a failed
        attempt. Between failed attempts the emergency stop is re-issued.
        """
        base = self._settings.verify_base_delay_s
        for attempt in range(1, attempts + 1):
            await self._sleep(base * attempt)

            observed = "unknown"
            verified = False
            try:
                snapshot = await self._gateway.query_status()
            except TransportError as exc:
                logger.warning(
                    "stop_verification_poll_failed",
                    config_id=config_id, attempt=attempt, kind=exc.kind.value,
                )
            else:
                instance = snapshot.find(config_id, bridge_type)
                observed = instance.status if instance is not None else "not found"
                verified = not snapshot.is_running(config_id, bridge_type)

            self._events.emit(
                VerificationResult(
                    config_id=config_id,
                    expected=LifecycleState.stopped,
                    verified=verified,
                    attempt=attempt,
                    observed=observed,
                )
            )
            if verified:
                logger.info("stop_verified", config_id=config_id, attempt=attempt)
                return True

            logger.warning(
                "stop_not_yet_verified", config_id=config_id, attempt=attempt, observed=observed
            )
            if attempt < attempts:
                await self._nudge()
        return False

    async def _nudge(self) -> None:
        try:
            await self._gateway.emergency_stop_all()
        except TransportError as exc:
            logger.warning("emergency_stop_nudge_failed", kind=exc.kind.value, error=str(exc))

    # ── operator recovery ──

    async def retry_stop(self, config_id: str) -> None:
        """Re-run verification after a failed stop, with an emergency stop first."""
        entry = self._require_entry(config_id)
        if entry.state is not LifecycleState.running:
            raise InvalidStateError(f"Cannot retry stop of {config_id} while {entry.state.value}")

        self._table.lock(config_id, LifecycleState.verifying, "retry_verification")
        await self._nudge()
        try:
            verified = await self._verify_stopped(
                config_id, entry.bridge_type, self._settings.retry_verify_attempts
            )
        except Exception:
            self._table.lock(config_id, LifecycleState.running, "retry_failed")
            raise
        if verified:
            self._table.unlock(config_id, "retry_successful")
            return
        self._table.lock(config_id, LifecycleState.running, "retry_failed")
        raise VerificationFailure(f"Retry stop of {config_id} could not be verified")

    async def force_kill(self, config_id: str) -> None:
        """Emergency stop plus a single verification. Entry is left as-is on failure."""
        entry = self._require_entry(config_id)
        if entry.is_transient:
            raise InvalidStateError(f"Cannot force kill {config_id} while {entry.state.value}")

        await self._nudge()
        verified = await self._verify_stopped(
            config_id, entry.bridge_type, self._settings.force_kill_verify_attempts
        )
        if not verified:
            raise VerificationFailure(f"Force kill of {config_id} could not be verified")
        self._table.unlock(config_id, "force_killed")

    def ignore_verification_failure(self, config_id: str) -> bool:
        """Operator asserts the instance is gone; drop the lock."""
        logger.warning("verification_failure_ignored", config_id=config_id)
        return self._table.unlock(config_id, "verification_ignored")

    def force_unlock(self, config_id: str) -> bool:
        self._cancel_post_start_check(config_id)
        return self._table.force_unlock(config_id)

    async def force_kill_all(self) -> int:
        """Emergency stop everything, then drop every lock. Returns entries removed."""
        await self._gateway.emergency_stop_all()
        removed = 0
        for entry in self._table:
            if self.force_unlock(entry.config_id):
                removed += 1
        logger.warning("force_kill_all_completed", removed=removed)
        return removed

    # ── delete / edit guards ──

    async def delete(self, config_id: str, *, confirm: bool = False) -> None:
        """Delete a configuration, stopping it first when it is locked running."""
        entry = self._table.get(config_id)
        if entry is not None:
            if entry.state is LifecycleState.running:
                if not confirm:
                    raise ConfirmationRequiredError(
                        f"Configuration '{entry.config_name or config_id}' is running; "
                        "confirm to stop and delete it"
                    )
                await self.stop(config_id)
            else:
                raise InvalidStateError(f"Cannot delete {config_id} while {entry.state.value}")

        if self._configs.get(config_id) is None:
            await self._configs.ensure_fresh()
        await self._configs.delete(config_id)
        self._table.unlock(config_id, "config_deleted")

    def ensure_editable(self, config_id: str) -> None:
        """Refuse edits to a configuration that is locked in any state."""
        entry = self._table.get(config_id)
        if entry is not None:
            raise InvalidStateError(
                f"Cannot edit '{entry.config_name or config_id}' while {entry.state.value}"
            )

    async def wait_post_start_check(self, config_id: str) -> None:
        """Block until the pending post-start diagnostic for config_id has run or been cancelled."""
        task = self._post_start_checks.get(config_id)
        if task is not None:
            await task.wait()

    # ── teardown ──

    def shutdown(self) -> None:
        """Cancel pending post-start diagnostics."""
        for task in self._post_start_checks.values():
            task.cancel()
        self._post_start_checks.clear()

    def _cancel_post_start_check(self, config_id: str) -> None:
        task = self._post_start_checks.pop(config_id, None)
        if task is not None:
            task.cancel()

    def _require_entry(self, config_id: str) -> LockEntry:
        entry = self._table.get(config_id)
        if entry is None:
            raise InvalidStateError(f"Configuration {config_id} is not locked")
        return entry
