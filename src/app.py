"""Composition root: wires settings, gateway, stores, table, controller and loop."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog

from src.config.settings import Settings, get_settings
from src.configs.store import ConfigStore, HttpConfigStore
from src.gateway.client import CommandGateway, HttpCommandGateway
from src.lifecycle.controller import LifecycleController
from src.lifecycle.events import EventBus
from src.lifecycle.lock_table import LockStateTable
from src.lifecycle.persistence import JsonFileStore, KeyValueStore, LockStatePersistence
from src.lifecycle.reconciler import ReconciliationLoop

logger = structlog.get_logger()


class BridgeControlClient:
    """One table, one controller, one reconciliation loop over shared collaborators.

    Use ``open_client()`` to build one from settings; the constructor takes
    already-built collaborators so tests can inject fakes.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        gateway: CommandGateway,
        config_store: ConfigStore,
        kv_store: KeyValueStore,
        events: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.events = events or EventBus()
        self.gateway = gateway
        self.config_store = config_store
        self.persistence = LockStatePersistence(
            kv_store, key=settings.persistence.key, ttl_s=settings.persistence.ttl_s
        )
        self.table = LockStateTable.restore(self.persistence, events=self.events)
        self.controller = LifecycleController(
            self.table,
            gateway,
            config_store,
            settings=settings.lifecycle,
            events=self.events,
        )
        self.reconciler = ReconciliationLoop(
            self.table,
            gateway,
            config_store,
            interval_s=settings.reconcile.interval_s,
            events=self.events,
        )
        self._http_client = http_client

    async def start(self, *, run_loop: bool = True) -> None:
        """Load configurations, sync with remote status, then start the loop."""
        await self.config_store.refresh()
        await self.reconciler.sync_after_load()
        if run_loop:
            self.reconciler.start()
        logger.info(
            "bridge_client_started",
            configs=len(self.config_store.configs()),
            restored_locks=len(self.table),
            loop=run_loop,
        )

    async def close(self) -> None:
        """Cancel timers, flush the table, release the HTTP client."""
        self.controller.shutdown()
        await self.reconciler.stop()
        if self._http_client is not None:
            await self._http_client.aclose()
        logger.info("bridge_client_closed")


def build_client(settings: Settings | None = None) -> BridgeControlClient:
    """Build a client talking HTTP to the configured control API."""
    settings = settings or get_settings()
    http_client = httpx.AsyncClient(
        base_url=settings.control_api.base_url,
        timeout=httpx.Timeout(settings.control_api.timeout_s),
        headers={"Accept": "application/json"},
    )
    return BridgeControlClient(
        settings=settings,
        gateway=HttpCommandGateway(settings.control_api.base_url, client=http_client),
        config_store=HttpConfigStore(
            http_client, freshness_s=settings.reconcile.config_freshness_s
        ),
        kv_store=JsonFileStore(settings.persistence.state_path),
        http_client=http_client,
    )


@asynccontextmanager
async def open_client(
    settings: Settings | None = None, *, run_loop: bool = False
) -> AsyncIterator[BridgeControlClient]:
    """Client lifespan: start on enter, close (and flush) on exit."""
    client = build_client(settings)
    try:
        await client.start(run_loop=run_loop)
        yield client
    finally:
        await client.close()
