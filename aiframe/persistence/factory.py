"""
Adapter registry for aiframe.

The registry maps a logical store name to one adapter instance so that every
caller using that name shares the adapter's pool or file handle. It is an
ordinary object: construct one at application start-up, hand it to the code
that needs stores, and call remove_all() at shutdown.

Invariants:
    - create() for an existing name returns the registered adapter unchanged
    - Configuration is validated before anything is registered or opened
    - Only the registry disconnects the adapters it created

How to change safely:
    - New adapter types need an AdapterType member and a branch in _build()
    - Keep create() free of I/O; adapters connect lazily
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping, Optional, Union

from .adapters.base import EntityAdapter
from .adapters.postgres import PostgresAdapter
from .adapters.sqlite import SqliteAdapter
from .config import AdapterConfig, AdapterType
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Process-wide owner of named entity adapters.

    Example:
        >>> registry = AdapterRegistry()
        >>> users = registry.create("users", {"type": "sqlite", "filename": "app.db"})
        >>> registry.create("users", {"type": "sqlite", "filename": "app.db"}) is users
        True
        >>> await registry.remove_all()
    """

    def __init__(self) -> None:
        self._adapters: dict[str, EntityAdapter] = {}

    def create(
        self,
        name: str,
        config: Union[AdapterConfig, Mapping[str, Any]],
    ) -> EntityAdapter:
        """Return the adapter registered as ``name``, creating it if needed.

        Args:
            name: Logical store name (also the default table name)
            config: AdapterConfig or an equivalent mapping

        Returns:
            The registered adapter

        Raises:
            ConfigurationError: If the configuration is incomplete or the
                type is unsupported
        """
        if not isinstance(name, str) or not name:
            raise ConfigurationError("Adapter name must be a non-empty string", field_name="name")

        existing = self._adapters.get(name)
        if existing is not None:
            return existing

        if not isinstance(config, AdapterConfig):
            config = AdapterConfig.from_dict(config)

        adapter = self._build(name, config)
        self._adapters[name] = adapter
        logger.info(
            "Registered adapter",
            extra={"adapter": name, "type": config.type.value, "table": adapter.table_ref},
        )
        return adapter

    def _build(self, name: str, config: AdapterConfig) -> EntityAdapter:
        if config.type == AdapterType.POSTGRES:
            return PostgresAdapter(config.to_postgres(name))
        elif config.type == AdapterType.SQLITE:
            return SqliteAdapter(config.to_sqlite(name))
        else:
            raise ConfigurationError(f"Unsupported adapter type: {config.type}", field_name="type")

    def get(self, name: str) -> Optional[EntityAdapter]:
        """Return the adapter registered as ``name``, or None."""
        return self._adapters.get(name)

    async def remove(self, name: str) -> None:
        """Disconnect and forget ``name``. Unknown names are ignored."""
        adapter = self._adapters.pop(name, None)
        if adapter is None:
            return
        await adapter.disconnect()
        logger.info("Removed adapter", extra={"adapter": name})

    async def remove_all(self) -> None:
        """Remove every registered adapter, e.g. at process shutdown.

        Every adapter is attempted; the first disconnect failure is raised
        after the rest have been removed.
        """
        first_error: Optional[BaseException] = None
        for name in list(self._adapters):
            try:
                await self.remove(name)
            except Exception as e:
                logger.exception("Failed to disconnect adapter", extra={"adapter": name})
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def names(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._adapters))
