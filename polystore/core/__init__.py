# ==============================================================================
# CORE PACKAGE INITIALIZATION
# ==============================================================================
# Core utilities: Settings, Exceptions, Constants
# ==============================================================================

"""
Core Module
===========

Contains core utilities and configurations for the library:
- settings: Environment configuration management
- exceptions: Error taxonomy shared by every adapter
- constants: Connection contract tables
"""

from polystore.core.settings import settings, get_settings, DatabaseType
from polystore.core.exceptions import (
    PolystoreError,
    ConfigError,
    UnsupportedTypeError,
    QueryCompileError,
    UnsupportedOperatorError,
    UnsupportedOperationError,
    AdapterNotImplementedError,
    ValidationError,
    DuplicateKeyError,
    NotFoundError,
    DatabaseError,
    ConnectionError,
    TransactionError,
    TransactionRollbackError,
    CloseAllError,
)

__all__ = [
    "settings",
    "get_settings",
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
