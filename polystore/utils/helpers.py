# ==============================================================================
# HELPER UTILITIES
# ==============================================================================
# Common utility functions used across the library
# ==============================================================================

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, List, Sequence, TypeVar
from uuid import UUID, uuid4

T = TypeVar("T")


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """
    Split a sequence into consecutive lists of at most ``size`` items.

    Args:
        items: Sequence to split
        size: Maximum chunk length (must be positive)

    Yields:
        Lists of consecutive items
    """
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_value(value: Any) -> str:
    """
    Serialize a value for string-only stores.

    Every value is JSON encoded, strings included, so ``"42"`` and
    ``42`` stay distinguishable on the way back.
    """
    return json.dumps(value, default=_json_default)


def deserialize_value(raw: Any) -> Any:
    """
    Inverse of :func:`serialize_value`.

    Values that are not valid JSON are returned unchanged, so keys
    written by other clients still read back as plain strings.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw
