"""Shared pytest fixtures for bridgectl tests.

Gateways are AsyncMock fakes; configurations live in a StaticConfigStore;
lock state is persisted to an InMemoryStore so tests can inspect snapshots.
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from src.config.settings import LifecycleSettings
from src.configs.models import BridgeConfig
from src.configs.store import StaticConfigStore
from src.gateway.protocol import CommandResult, RemoteInstance, StatusSnapshot
from src.lifecycle.events import EventBus
from src.lifecycle.lock_table import LockStateTable
from src.lifecycle.persistence import InMemoryStore, LockStatePersistence


def make_config(config_id: str = "cfg1", **overrides: Any) -> BridgeConfig:
    """A complete IP configuration unless overridden."""
    fields: dict[str, Any] = {
        "id": config_id,
        "name": f"Bridge {config_id}",
        "bridge_type": "ip",
        "ip_host": "192.168.1.50",
        "ip_port": 4001,
        "tcp_out_host": "127.0.0.1",
        "tcp_out_port": 5001,
    }
    fields.update(overrides)
    return BridgeConfig(**fields)


def snapshot_of(*instances: tuple[str, str, str]) -> StatusSnapshot:
    """Build a StatusSnapshot from (config_id, type, status) triples."""
    items = [
        RemoteInstance(config_id=cid, type=kind, status=status, instance_id=f"{kind}_{cid}")
        for cid, kind, status in instances
    ]
    return StatusSnapshot(
        total_instances=len(items),
        active_instances=sum(1 for i in items if i.is_running),
        instances=items,
    )


def persisted_ids(kv: InMemoryStore) -> set[str]:
    raw = kv.get("bridgectl.lock_states")
    if raw is None:
        return set()
    return set(json.loads(raw)["entries"])


@pytest.fixture(autouse=True)
def captured_logs():
    """Route structlog events into a list instead of stdout."""
    with capture_logs() as logs:
        yield logs


@pytest.fixture
def gateway() -> AsyncMock:
    gw = AsyncMock()
    gw.start.return_value = CommandResult(success=True, message="started")
    gw.stop_instance.return_value = CommandResult(success=True)
    gw.stop_all.return_value = CommandResult(success=True)
    gw.emergency_stop_all.return_value = CommandResult(success=True)
    gw.query_status.return_value = StatusSnapshot()
    return gw


@pytest.fixture
def kv() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def events() -> tuple[EventBus, list]:
    bus = EventBus()
    received: list = []
    bus.subscribe(received.append)
    return bus, received


@pytest.fixture
def table(kv: InMemoryStore, events) -> LockStateTable:
    bus, _ = events
    return LockStateTable(LockStatePersistence(kv), events=bus)


@pytest.fixture
def config_store() -> StaticConfigStore:
    return StaticConfigStore([make_config("cfg1"), make_config("cfg2")])


@pytest.fixture
def fast_settings() -> LifecycleSettings:
    """Lifecycle policy with every delay at zero."""
    return LifecycleSettings(post_start_check_delay_s=0, verify_base_delay_s=0)


@pytest.fixture(name="make_config")
def make_config_fixture():
    return make_config


@pytest.fixture(name="snapshot_of")
def snapshot_of_fixture():
    return snapshot_of


@pytest.fixture(name="persisted_ids")
def persisted_ids_fixture():
    return persisted_ids
