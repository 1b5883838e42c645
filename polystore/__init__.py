# ==============================================================================
# POLYSTORE PACKAGE INITIALIZATION
# ==============================================================================
# Backend-agnostic async data-access layer
# Supports: MongoDB, PostgreSQL family, SQLite, Neo4j, Redis
# Architecture: Adapter Pattern, Unit of Work, Factory Pattern
# ==============================================================================

"""
polystore
=========

One capability contract for CRUD, query and transaction operations
across document, relational, graph and key-value stores.

Features:
---------
- Generic predicate/update operator algebra compiled per backend
- Adapters over native async drivers (Motor, SQLAlchemy, neo4j, redis-py)
- Adapter registry with runtime registration
- Connection cache with concurrent shutdown
- Structured error taxonomy

Usage:
------
    from polystore import ConnectionManager

    async with ConnectionManager() as db:
        users = db.connect("sqlite", {"database": ":memory:"})
        await users.initialize()
        await users.create_model("users", {"email": {"type": "string", "unique": True}})
        await users.create("users", {"email": "a@example.com"})
        adults = await users.find_many("users", {"age": {"$gte": 18}}, sort={"age": -1})
"""

from polystore.core import (
    AdapterNotImplementedError,
    CloseAllError,
    ConfigError,
    ConnectionError,
    DatabaseError,
    DatabaseType,
    DuplicateKeyError,
    NotFoundError,
    PolystoreError,
    QueryCompileError,
    TransactionError,
    TransactionRollbackError,
    UnsupportedOperationError,
    UnsupportedOperatorError,
    UnsupportedTypeError,
    ValidationError,
)
from polystore.database import (
    BaseDatabaseAdapter,
    BulkUpdateOperation,
    ConnectionManager,
    DatabaseFactory,
    ModelSchema,
)

__version__ = "1.0.0"
__all__ = [
    "__version__",
    "ConnectionManager",
    "DatabaseFactory",
    "BaseDatabaseAdapter",
    "BulkUpdateOperation",
    "ModelSchema",
    "DatabaseType",
    "PolystoreError",
    "ConfigError",
    "UnsupportedTypeError",
    "QueryCompileError",
    "UnsupportedOperatorError",
    "UnsupportedOperationError",
    "AdapterNotImplementedError",
    "ValidationError",
    "DuplicateKeyError",
    "NotFoundError",
    "DatabaseError",
    "ConnectionError",
    "TransactionError",
    "TransactionRollbackError",
    "CloseAllError",
]
