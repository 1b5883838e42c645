# ==============================================================================
# CONSTANTS - Connection Contract Tables
# ==============================================================================
# Required and identity fields per database type
# The required-field table is part of the external connection contract
# ==============================================================================

from __future__ import annotations

from typing import Dict, Final, FrozenSet, Tuple


# ==============================================================================
# CONNECTION CONTRACT
# ==============================================================================

class ConnectionConstants:
    """Per-type connection configuration tables."""

    _RELATIONAL: Final[Tuple[str, ...]] = ("host", "port", "database", "user", "password")

    # Fields connect() refuses to proceed without
    REQUIRED_FIELDS: Final[Dict[str, Tuple[str, ...]]] = {
        "postgres": _RELATIONAL,
        "cockroachdb": _RELATIONAL,
        "timescale": _RELATIONAL,
        "mongodb": ("uri", "database"),
        "redis": ("host", "port"),
        "neo4j": ("uri", "username", "password"),
        "sqlite": ("database",),
    }

    # Fields that identify one logical connection in the cache key
    IDENTITY_FIELDS: Final[Dict[str, Tuple[str, ...]]] = {
        "postgres": ("host", "port", "database", "user"),
        "cockroachdb": ("host", "port", "database", "user"),
        "timescale": ("host", "port", "database", "user"),
        "mongodb": ("uri", "database"),
        "redis": ("host", "port", "db"),
        "neo4j": ("uri", "username", "database"),
        "sqlite": ("database",),
    }

    # Never part of a cache key
    SECRET_FIELDS: Final[FrozenSet[str]] = frozenset(
        {"password", "secret", "token", "api_key", "access_key", "secret_key"}
    )


# ==============================================================================
# RECORD CONSTANTS
# ==============================================================================

class RecordConstants:
    """Canonical record conventions."""

    KEY_SEPARATOR: Final[str] = ":"
