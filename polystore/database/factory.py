# ==============================================================================
# DATABASE FACTORY - Adapter Registry & Instantiation
# ==============================================================================
# Factory Pattern mapping database type names to adapter classes
# Explicitly constructed; callers own their registry
# ==============================================================================

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from polystore.core.exceptions import UnsupportedTypeError
from polystore.core.settings import DatabaseType
from polystore.database.adapters.base_adapter import BaseDatabaseAdapter
from polystore.database.adapters.mongodb_adapter import MongoDBAdapter
from polystore.database.adapters.neo4j_adapter import Neo4jAdapter
from polystore.database.adapters.postgres_adapter import (
    CockroachDBAdapter,
    PostgresAdapter,
    TimescaleAdapter,
)
from polystore.database.adapters.redis_adapter import RedisAdapter
from polystore.database.adapters.sqlite_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)

TypeName = Union[str, DatabaseType]

DEFAULT_ADAPTERS: Dict[str, Type[BaseDatabaseAdapter]] = {
    DatabaseType.MONGODB.value: MongoDBAdapter,
    DatabaseType.POSTGRES.value: PostgresAdapter,
    DatabaseType.COCKROACHDB.value: CockroachDBAdapter,
    DatabaseType.TIMESCALE.value: TimescaleAdapter,
    DatabaseType.SQLITE.value: SQLiteAdapter,
    DatabaseType.NEO4J.value: Neo4jAdapter,
    DatabaseType.REDIS.value: RedisAdapter,
}


def normalize_type(db_type: TypeName) -> str:
    """Lower-cased, stripped type name; accepts DatabaseType members."""
    if isinstance(db_type, DatabaseType):
        return db_type.value
    return str(db_type).strip().lower()


class DatabaseFactory:
    """
    Registry of adapter classes keyed by database type.

    Type names are case-insensitive. Every instance starts with the
    shipped adapters and can be extended with custom ones.

    Features:
        - Adapter creation without I/O (callers await ``initialize()``)
        - Runtime registration and removal of adapter classes
        - Contract check on registration (subclass, not abstract)

    Example:
        >>> factory = DatabaseFactory()
        >>> adapter = factory.create_database("sqlite", {"database": ":memory:"})
        >>> await adapter.initialize()
        >>>
        >>> factory.add_adapter("custom", MyAdapter)
        >>> factory.is_supported("CUSTOM")
        True
    """

    def __init__(
        self,
        adapters: Optional[Mapping[str, Type[BaseDatabaseAdapter]]] = None,
    ) -> None:
        """
        Args:
            adapters: Registry contents; defaults to the shipped adapters
        """
        self._adapters: Dict[str, Type[BaseDatabaseAdapter]] = {}
        for name, adapter_cls in (DEFAULT_ADAPTERS if adapters is None else adapters).items():
            self.add_adapter(name, adapter_cls)

    def create_database(
        self,
        db_type: TypeName,
        config: Optional[Mapping[str, Any]] = None,
    ) -> BaseDatabaseAdapter:
        """
        Construct an adapter for ``db_type``.

        Args:
            db_type: Registered type name
            config: Adapter configuration mapping

        Returns:
            Uninitialized adapter instance

        Raises:
            UnsupportedTypeError: If no adapter is registered for the type
        """
        name = normalize_type(db_type)
        adapter_cls = self._adapters.get(name)
        if adapter_cls is None:
            raise UnsupportedTypeError(name)

        adapter = adapter_cls(dict(config or {}))
        logger.info(f"Created {adapter_cls.__name__} for '{name}'")
        return adapter

    def add_adapter(self, db_type: TypeName, adapter_cls: Type[BaseDatabaseAdapter]) -> None:
        """
        Register (or silently replace) the adapter class for a type.

        Raises:
            ValueError: If the type name is empty
            TypeError: If ``adapter_cls`` is not a concrete BaseDatabaseAdapter subclass
        """
        name = normalize_type(db_type)
        if not name:
            raise ValueError("Database type name must not be empty")
        if not inspect.isclass(adapter_cls) or not issubclass(adapter_cls, BaseDatabaseAdapter):
            raise TypeError(
                f"Adapter for '{name}' must be a BaseDatabaseAdapter subclass, "
                f"got {adapter_cls!r}"
            )
        if inspect.isabstract(adapter_cls):
            missing = sorted(getattr(adapter_cls, "__abstractmethods__", ()))
            raise TypeError(
                f"Adapter {adapter_cls.__name__} for '{name}' does not implement: "
                f"{', '.join(missing)}"
            )
        if name in self._adapters and self._adapters[name] is not adapter_cls:
            logger.debug(f"Replacing adapter for '{name}' with {adapter_cls.__name__}")
        self._adapters[name] = adapter_cls

    def remove_adapter(self, db_type: TypeName) -> bool:
        """
        Unregister a type.

        Returns:
            True if an adapter was registered for the type
        """
        return self._adapters.pop(normalize_type(db_type), None) is not None

    def is_supported(self, db_type: TypeName) -> bool:
        return normalize_type(db_type) in self._adapters

    def get_supported_databases(self) -> List[str]:
        """Registered type names in sorted order."""
        return sorted(self._adapters)

    def get_adapter_class(self, db_type: TypeName) -> Type[BaseDatabaseAdapter]:
        """
        Raises:
            UnsupportedTypeError: If no adapter is registered for the type
        """
        name = normalize_type(db_type)
        if name not in self._adapters:
            raise UnsupportedTypeError(name)
        return self._adapters[name]
