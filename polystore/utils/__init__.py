# ==============================================================================
# UTILS PACKAGE INITIALIZATION
# ==============================================================================

"""
Utilities Module
================

Helper functions and utilities:
- ID generator
- Chunking for batch submission
- Value serialization for string-only stores
- Logger setup
"""

from polystore.utils.helpers import (
    chunked,
    deserialize_value,
    generate_uuid,
    serialize_value,
)
from polystore.utils.logger import get_logger, setup_logger

__all__ = [
    "chunked",
    "deserialize_value",
    "generate_uuid",
    "serialize_value",
    "get_logger",
    "setup_logger",
]
