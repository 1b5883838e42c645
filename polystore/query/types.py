# ==============================================================================
# FIELD TYPES - Portable Type Names
# ==============================================================================
# Declared field types shared by schemas and compilers
# ==============================================================================

from __future__ import annotations

from enum import Enum


class FieldType(str, Enum):
    """Portable field types."""
    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"
    ARRAY = "array"
    UUID = "uuid"
