# ==============================================================================
# DATABASE PACKAGE INITIALIZATION
# ==============================================================================
# Backend-agnostic data-access layer with multi-database support
# ==============================================================================

"""
Database Module
===============

Provides a unified database abstraction layer supporting:
- SQLite (development/testing)
- PostgreSQL, CockroachDB, TimescaleDB (relational)
- MongoDB (document store)
- Neo4j (graph store)
- Redis (key-value store)

Key Components:
- Adapters: Database-specific implementations
- Factory: Adapter registry and instantiation
- ConnectionManager: Cached connection facade
- Unit of Work: Transaction management
"""

from polystore.database.schema import FieldDefinition, ModelSchema
from polystore.database.results import (
    BulkItemError,
    BulkUpdateOperation,
    BulkUpdateResult,
    BulkWriteResult,
    DeleteResult,
    UpdateResult,
)
from polystore.database.unit_of_work import UnitOfWork
from polystore.database.adapters import AdapterCapabilities, BaseDatabaseAdapter
from polystore.database.factory import DatabaseFactory
from polystore.database.validators import ConfigValidator
from polystore.database.connection import ConnectionManager, connection_key

__all__ = [
    "FieldDefinition",
    "ModelSchema",
    "BulkItemError",
    "BulkUpdateOperation",
    "BulkUpdateResult",
    "BulkWriteResult",
    "DeleteResult",
    "UpdateResult",
    "UnitOfWork",
    "AdapterCapabilities",
    "BaseDatabaseAdapter",
    "DatabaseFactory",
    "ConfigValidator",
    "ConnectionManager",
    "connection_key",
]
