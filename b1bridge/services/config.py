"""
ConfigProvider - connection settings read lazily from a configuration store.

The store is consulted once; the cached configuration is reused until
clear_cache() is called, after which the next get() re-reads the store.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Mapping, Protocol

from loguru import logger

FALSE_VALUES = frozenset({"false", "0", "no", "off"})


@dataclass(frozen=True)
class ConnectionConfig:
    """Connection settings for one upstream service."""

    endpoint: str
    timeout: float = 10.0
    retries: int = 3
    verify_ssl: bool = True


class ConfigStore(Protocol):
    """String key-value configuration source."""

    async def get(self, key: str, default: str | None = None) -> str | None: ...


class DictConfigStore:
    """Configuration held in a mapping (static config, tests)."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self.values: dict[str, str] = dict(values or {})

    async def get(self, key: str, default: str | None = None) -> str | None:
        return self.values.get(key, default)


class EnvConfigStore:
    """Configuration read from environment variables (sl_timeout -> SL_TIMEOUT)."""

    async def get(self, key: str, default: str | None = None) -> str | None:
        return os.environ.get(key.upper(), default)


class ConfigProvider:
    """
    Lazily loaded, refreshable connection configuration.

    Usage:
        provider = ConfigProvider(EnvConfigStore(), defaults, prefix="sl")
        config = await provider.get()    # reads sl_endpoint, sl_timeout, ...
        provider.clear_cache()           # next get() reads the store again
    """

    def __init__(
        self,
        store: ConfigStore,
        defaults: ConnectionConfig,
        prefix: str = "sl",
    ):
        self._store = store
        self._defaults = defaults
        self._prefix = prefix
        self._config: ConnectionConfig | None = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._config is not None

    async def get(self) -> ConnectionConfig:
        """Return the cached configuration, loading it on first use."""
        if self._config is not None:
            return self._config

        async with self._lock:
            if self._config is None:
                return await self._load()
            return self._config

    def clear_cache(self) -> None:
        """Forget the cached configuration."""
        self._config = None
        logger.info(f"Configuration cache cleared for '{self._prefix}'")

    async def _load(self) -> ConnectionConfig:
        defaults = self._defaults
        try:
            endpoint = await self._store.get(f"{self._prefix}_endpoint", defaults.endpoint)
            timeout = await self._store.get(f"{self._prefix}_timeout", str(defaults.timeout))
            retries = await self._store.get(f"{self._prefix}_retries", str(defaults.retries))
            verify_ssl = await self._store.get(
                f"{self._prefix}_verify_ssl", "true" if defaults.verify_ssl else "false"
            )
        except Exception as e:
            # not cached: the next call tries the store again
            logger.warning(f"Could not load '{self._prefix}' configuration, using defaults: {e}")
            return defaults

        config = ConnectionConfig(
            endpoint=endpoint or defaults.endpoint,
            timeout=self._parse_float("timeout", timeout, defaults.timeout),
            retries=max(1, self._parse_int("retries", retries, defaults.retries)),
            verify_ssl=(verify_ssl or "").strip().lower() not in FALSE_VALUES,
        )
        self._config = config

        logger.info(
            f"Loaded '{self._prefix}' configuration: endpoint={config.endpoint} "
            f"timeout={config.timeout}s retries={config.retries} verify_ssl={config.verify_ssl}"
        )
        return config

    def _parse_float(self, name: str, raw: str | None, default: float) -> float:
        try:
            value = float(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.warning(f"Invalid {self._prefix}_{name}={raw!r}, using {default}")
            return default
        return value if value > 0 else default

    def _parse_int(self, name: str, raw: str | None, default: int) -> int:
        try:
            return int(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.warning(f"Invalid {self._prefix}_{name}={raw!r}, using {default}")
            return default
