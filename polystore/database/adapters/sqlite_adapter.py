# ==============================================================================
# SQLITE ADAPTER - SQLAlchemy Async with aiosqlite
# ==============================================================================
# Lightweight database adapter for development and testing
# File-based or in-memory database support
# ==============================================================================

from __future__ import annotations

from typing import Any, Dict, Union

from sqlalchemy.engine import URL
from sqlalchemy.pool import StaticPool

from polystore.database.adapters.base_adapter import AdapterCapabilities
from polystore.database.adapters.sql_adapter import SQLAdapter


class SQLiteAdapter(SQLAdapter):
    """
    SQLite database adapter using SQLAlchemy async with aiosqlite.

    Ideal for development, testing, and small-scale deployments.
    Provides the same interface as PostgresAdapter for seamless
    database switching.

    Differences from PostgreSQL:
        - Arrays are stored as JSON, so ``$push/$pull/$append/$prepend``
          need ``best_effort_updates`` (read-modify-write)
        - ``$regex`` uses the Python ``re`` module
        - ``:memory:`` databases share one connection across the adapter;
          a transaction holds it exclusively until it ends

    Example:
        >>> adapter = SQLiteAdapter({"database": ":memory:"})
        >>> await adapter.initialize()
        >>> await adapter.create_model("users", {"email": "string"})
        >>> user = await adapter.create("users", {"email": "test@example.com"})
    """

    backend_name = "sqlite"
    dialect = "sqlite"
    supports_savepoints = False
    capabilities = AdapterCapabilities(
        native_list_operations=False,
        exists_policy="null_check",
        regex_dialect="python",
    )

    @property
    def in_memory(self) -> bool:
        url = self.config.get("url")
        if url:
            return ":memory:" in str(url) or str(url).endswith("://")
        return self.config.get("database") in (None, "", ":memory:")

    @property
    def shares_connection(self) -> bool:
        return self.in_memory

    def build_url(self) -> Union[str, URL]:
        if self.config.get("url"):
            url = str(self.config["url"])
            # Ensure async driver is used
            if url.startswith("sqlite://"):
                url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
            return url
        if self.in_memory:
            return "sqlite+aiosqlite://"
        return f"sqlite+aiosqlite:///{self.config['database']}"

    def engine_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if self.in_memory:
            options["poolclass"] = StaticPool
        return options
