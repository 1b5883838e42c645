# ==============================================================================
# POSTGRESQL ADAPTER - SQLAlchemy Async with asyncpg
# ==============================================================================
# PostgreSQL and wire-compatible stores (CockroachDB, TimescaleDB)
# Native arrays make every list update operator atomic
# ==============================================================================

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

import sqlalchemy as sa
from sqlalchemy.engine import URL

from polystore.core.exceptions import ValidationError
from polystore.database.adapters.sql_adapter import SQLAdapter
from polystore.database.schema import ModelSchema

logger = logging.getLogger(__name__)


class PostgresAdapter(SQLAdapter):
    """
    PostgreSQL database adapter using SQLAlchemy async with asyncpg.

    Connection Pool Configuration:
        - pool_size:     Initial connections (default: 5)
        - max_overflow:  Extra connections allowed (default: 10)
        - pool_timeout:  Wait time for connection (default: 30s)
        - pool_recycle:  Recycle connections after (default: 1800s)

    Usage:
        adapter = PostgresAdapter({
            "host": "localhost", "port": 5432, "database": "app",
            "user": "app", "password": "secret",
        })
        await adapter.initialize()
        await adapter.create_model("users", {"email": {"type": "string", "unique": True}})
        await adapter.close()
    """

    backend_name = "postgres"
    driver = "postgresql+asyncpg"

    def build_url(self) -> Union[str, URL]:
        if self.config.get("url"):
            return self.config["url"]
        return URL.create(
            self.driver,
            username=self.config.get("user"),
            password=self.config.get("password"),
            host=self.config.get("host"),
            port=int(self.config["port"]) if self.config.get("port") else None,
            database=self.config.get("database"),
        )


class CockroachDBAdapter(PostgresAdapter):
    """
    CockroachDB adapter over the PostgreSQL wire protocol.

    Shares PostgreSQL's SQL dialect; the default port is 26257.
    """

    backend_name = "cockroachdb"


class TimescaleAdapter(PostgresAdapter):
    """
    TimescaleDB adapter.

    ``create_model`` accepts a ``time_column`` that turns the new
    table into a hypertable.
    """

    backend_name = "timescale"

    async def create_model(
        self,
        model: str,
        schema: Union[ModelSchema, Mapping[str, Any], None] = None,
        time_column: Optional[str] = None,
    ) -> ModelSchema:
        resolved = await super().create_model(model, schema)
        if time_column:
            if time_column not in resolved.fields:
                raise ValidationError(
                    f"Unknown time column '{time_column}' for model '{model}'",
                    errors={time_column: "unknown field"},
                )
            await self.query(
                sa.text(
                    "SELECT create_hypertable(:table, :column, if_not_exists => TRUE)"
                ),
                {"table": model, "column": time_column},
            )
            logger.info(f"timescale model '{model}' is a hypertable on '{time_column}'")
        return resolved
