# ==============================================================================
# OPERATION RESULTS - Canonical Write Outcomes
# ==============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping

from polystore.core.exceptions import QueryCompileError


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of ``update``; backends that cannot tell report modified == matched."""
    matched_count: int
    modified_count: int


@dataclass(frozen=True)
class DeleteResult:
    deleted_count: int


@dataclass(frozen=True)
class BulkItemError:
    """
    Failure of one item in a bulk call.

    Attributes:
        index: Position of the item in the submitted sequence
        error: Taxonomy error describing the failure
    """
    index: int
    error: BaseException


@dataclass
class BulkWriteResult:
    """Outcome of ``bulk_create``; successful items stay committed."""
    inserted_count: int = 0
    inserted_ids: List[Any] = field(default_factory=list)
    errors: List[BulkItemError] = field(default_factory=list)


@dataclass
class BulkUpdateResult:
    """Outcome of ``bulk_update``; successful operations stay committed."""
    matched_count: int = 0
    modified_count: int = 0
    errors: List[BulkItemError] = field(default_factory=list)


@dataclass(frozen=True)
class BulkUpdateOperation:
    """One predicate/update pair of a ``bulk_update`` call."""
    predicate: Mapping[str, Any]
    update: Mapping[str, Any]

    @classmethod
    def coerce(cls, value: Any) -> "BulkUpdateOperation":
        """Accept an instance, a ``{"predicate", "update"}`` mapping or a pair."""
        if isinstance(value, cls):
            return value
        try:
            if isinstance(value, Mapping):
                return cls(predicate=value["predicate"], update=value["update"])
            predicate, update = value
        except (KeyError, TypeError, ValueError) as e:
            raise QueryCompileError(
                f"Invalid bulk update operation: {value!r}",
                details={"operation": repr(value)},
            ) from e
        return cls(predicate=predicate, update=update)
