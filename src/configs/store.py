"""ConfigStore: cached view of the bridge configurations known to the backend.

Refreshes are coalesced: concurrent callers share one in-flight load, and a
load is skipped entirely while the cache is younger than the freshness window.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable

import httpx
import structlog

from src.configs.models import BridgeConfig, BridgeType
from src.constants import BRIDGE_TYPES
from src.gateway.client import classify_failure
from src.gateway.protocol import parse_error_body
from src.infra.errors import ErrorKind, NotFoundError, TransportError

logger = structlog.get_logger()


class ConfigStore(ABC):
    """Base class for configuration sources with coalesced, cached refresh."""

    def __init__(
        self,
        *,
        freshness_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._configs: dict[str, BridgeConfig] = {}
        self._freshness_s = freshness_s
        self._clock = clock
        self._last_load: float | None = None
        self._inflight: asyncio.Task[list[BridgeConfig]] | None = None

    @abstractmethod
    async def _fetch(self) -> list[BridgeConfig]:
        """Load every configuration from the source."""
        ...

    @abstractmethod
    async def _remove(self, config: BridgeConfig) -> None:
        """Delete one configuration at the source."""
        ...

    @property
    def is_loading(self) -> bool:
        return self._inflight is not None

    @property
    def last_load(self) -> float | None:
        return self._last_load

    def configs(self) -> list[BridgeConfig]:
        return list(self._configs.values())

    def get(self, config_id: str) -> BridgeConfig | None:
        return self._configs.get(config_id)

    def is_fresh(self) -> bool:
        if self._last_load is None:
            return False
        return (self._clock() - self._last_load) < self._freshness_s

    async def ensure_fresh(self) -> list[BridgeConfig]:
        """Refresh unless a load is running (join it) or the cache is still fresh."""
        return await self.refresh(force=False)

    async def refresh(self, *, force: bool = True) -> list[BridgeConfig]:
        """Reload configurations. Concurrent callers share one in-flight load.

        Load failures are logged and the previous cache is kept.
        """
        if self._inflight is not None:
            logger.debug("config_refresh_joined")
            return await asyncio.shield(self._inflight)
        if not force and self.is_fresh():
            return self.configs()

        self._inflight = asyncio.ensure_future(self._load())
        try:
            return await self._inflight
        finally:
            self._inflight = None

    async def delete(self, config_id: str) -> None:
        """Delete a configuration. Raises NotFoundError if it is unknown."""
        config = self._configs.get(config_id)
        if config is None:
            raise NotFoundError(f"Configuration {config_id} not found")
        await self._remove(config)
        self._configs.pop(config_id, None)
        logger.info("config_deleted", config_id=config_id, name=config.name)

    async def _load(self) -> list[BridgeConfig]:
        try:
            configs = await self._fetch()
        except Exception:
            logger.exception("config_refresh_failed", cached=len(self._configs))
            return self.configs()
        self._configs = {c.id: c for c in configs}
        self._last_load = self._clock()
        logger.info("config_refreshed", count=len(self._configs))
        return self.configs()


class StaticConfigStore(ConfigStore):
    """In-process configuration source (embedding, tests)."""

    def __init__(self, configs: Iterable[BridgeConfig] = (), **kwargs) -> None:
        super().__init__(**kwargs)
        self._source: dict[str, BridgeConfig] = {c.id: c for c in configs}
        self._configs = dict(self._source)
        self.fetch_count = 0

    def put(self, config: BridgeConfig) -> None:
        self._source[config.id] = config

    def discard(self, config_id: str) -> None:
        """Remove at the source only; the cache keeps it until the next refresh."""
        self._source.pop(config_id, None)

    async def _fetch(self) -> list[BridgeConfig]:
        self.fetch_count += 1
        return list(self._source.values())

    async def _remove(self, config: BridgeConfig) -> None:
        self._source.pop(config.id, None)


class HttpConfigStore(ConfigStore):
    """Configurations served by the bridge service (/api/{ip,serial}-configs)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        bridge_types: Iterable[BridgeType] = BRIDGE_TYPES,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._client = client
        self._bridge_types = tuple(bridge_types)

    async def _fetch(self) -> list[BridgeConfig]:
        configs: list[BridgeConfig] = []
        for bridge_type in self._bridge_types:
            response = await self._client.get(f"/api/{bridge_type}-configs")
            _raise_for_status(response)
            for raw in response.json() or []:
                configs.append(BridgeConfig.model_validate({**raw, "bridgeType": bridge_type}))
        return configs

    async def _remove(self, config: BridgeConfig) -> None:
        response = await self._client.delete(f"/api/{config.bridge_type}-configs/{config.id}")
        if response.status_code == 404:
            raise NotFoundError(f"Configuration {config.id} not found on server")
        _raise_for_status(response)


def _raise_for_status(response: httpx.Response) -> None:
    if not response.is_error:
        return
    try:
        message = parse_error_body(response.json())
    except ValueError:
        message = response.text
    kind = classify_failure(response.status_code, message)
    raise TransportError(
        message or f"HTTP {response.status_code}",
        kind=kind if kind is not ErrorKind.unknown else ErrorKind.server_error,
        status_code=response.status_code,
    )
