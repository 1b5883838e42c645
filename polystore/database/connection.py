# ==============================================================================
# CONNECTION MANAGER - Cached Adapter Facade
# ==============================================================================
# Validates configs, caches one adapter per logical connection
# and closes them together on shutdown
# ==============================================================================

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from polystore.core.constants import ConnectionConstants
from polystore.core.exceptions import CloseAllError
from polystore.database.adapters.base_adapter import BaseDatabaseAdapter
from polystore.database.factory import DatabaseFactory, TypeName, normalize_type
from polystore.database.validators import ConfigValidator

logger = logging.getLogger(__name__)


def connection_key(db_type: TypeName, config: Mapping[str, Any]) -> str:
    """
    Cache key for a connection.

    Uses the type's identity fields (absent ones skipped) in sorted
    order; types without an identity table use every config item.
    Secret fields never enter the key. Fields and values are
    form-encoded, so ``&`` and ``=`` inside a value cannot forge a field.

    Example:
        >>> connection_key("Redis", {"host": "localhost", "port": 6379, "password": "x"})
        'redis:host=localhost&port=6379'
    """
    name = normalize_type(db_type)
    identity = ConnectionConstants.IDENTITY_FIELDS.get(name)
    if identity is None:
        fields = list(config)
    else:
        fields = [field for field in identity if config.get(field) is not None]
    pairs = [
        (field, config[field])
        for field in sorted(fields)
        if field not in ConnectionConstants.SECRET_FIELDS
    ]
    return f"{name}:" + urlencode(pairs, safe=":/")


class ConnectionManager:
    """
    Facade caching one adapter per logical connection.

    ``connect`` never performs I/O: callers await ``initialize()`` on
    the returned adapter. The manager is an async context manager
    that closes every cached adapter on exit.

    Example:
        >>> async with ConnectionManager() as db:
        ...     users = db.connect("sqlite", {"database": ":memory:"})
        ...     await users.initialize()
        ...     await users.create_model("users", {"email": "string"})
    """

    def __init__(self, factory: Optional[DatabaseFactory] = None) -> None:
        self.factory = factory or DatabaseFactory()
        self._connections: Dict[str, BaseDatabaseAdapter] = {}

    def connect(self, db_type: TypeName, config: Mapping[str, Any]) -> BaseDatabaseAdapter:
        """
        Return the cached adapter for this connection, creating it if needed.

        Raises:
            ConfigError: If the configuration is invalid
            UnsupportedTypeError: If no adapter is registered for the type
        """
        ConfigValidator.validate(db_type, config)
        name = normalize_type(db_type)
        key = connection_key(name, config)

        adapter = self._connections.get(key)
        if adapter is not None:
            return adapter

        adapter = self.factory.create_database(name, config)
        self._connections[key] = adapter
        logger.info(f"Registered connection {key}")
        return adapter

    async def disconnect(self, db_type: TypeName, config: Mapping[str, Any]) -> bool:
        """
        Close and evict one cached connection.

        Returns:
            True if the connection was cached
        """
        key = connection_key(db_type, config)
        adapter = self._connections.pop(key, None)
        if adapter is None:
            return False
        await adapter.close()
        logger.info(f"Closed connection {key}")
        return True

    async def close_all(self) -> None:
        """
        Close every cached adapter concurrently and clear the cache.

        Raises:
            CloseAllError: Listing every adapter whose close() failed
        """
        connections = dict(self._connections)
        self._connections.clear()
        if not connections:
            return

        results = await asyncio.gather(
            *(adapter.close() for adapter in connections.values()),
            return_exceptions=True,
        )
        errors = {
            key: result
            for key, result in zip(connections, results)
            if isinstance(result, BaseException)
        }
        logger.info(f"Closed {len(connections) - len(errors)}/{len(connections)} connection(s)")
        if errors:
            for key, error in errors.items():
                logger.error(f"Error closing {key}: {error}")
            raise CloseAllError(errors)

    def get_connections(self) -> Mapping[str, BaseDatabaseAdapter]:
        """Read-only snapshot of the cache, keyed by connection key."""
        return MappingProxyType(dict(self._connections))

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close_all()
