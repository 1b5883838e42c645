# ==============================================================================
# DATABASE ADAPTERS PACKAGE
# ==============================================================================

"""
Database Adapters
=================

Provides unified interface implementations for different databases:
- BaseDatabaseAdapter: Abstract interface definition
- SQLAdapter: Shared SQLAlchemy async Core strategy
- PostgresAdapter / CockroachDBAdapter / TimescaleAdapter: asyncpg
- SQLiteAdapter: SQLite using aiosqlite
- MongoDBAdapter: MongoDB using Motor async driver
- Neo4jAdapter: Neo4j using the official async driver
- RedisAdapter: Redis using redis-py asyncio
"""

from polystore.database.adapters.base_adapter import AdapterCapabilities, BaseDatabaseAdapter
from polystore.database.adapters.mongodb_adapter import MongoDBAdapter
from polystore.database.adapters.neo4j_adapter import Neo4jAdapter
from polystore.database.adapters.postgres_adapter import (
    CockroachDBAdapter,
    PostgresAdapter,
    TimescaleAdapter,
)
from polystore.database.adapters.redis_adapter import RedisAdapter
from polystore.database.adapters.sql_adapter import SQLAdapter
from polystore.database.adapters.sqlite_adapter import SQLiteAdapter

__all__ = [
    "AdapterCapabilities",
    "BaseDatabaseAdapter",
    "SQLAdapter",
    "PostgresAdapter",
    "CockroachDBAdapter",
    "TimescaleAdapter",
    "SQLiteAdapter",
    "MongoDBAdapter",
    "Neo4jAdapter",
    "RedisAdapter",
]
