# ==============================================================================
# MATCHER COMPILER - In-Process Predicate Evaluation
# ==============================================================================
# For stores without a server-side value query language (key-value)
# Compiles conditions into Python callables over canonical records
# ==============================================================================

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from polystore.query.compiler import CompiledQuery, CompiledUpdate, QueryCompiler
from polystore.query.operators import (
    Condition,
    QueryOperator,
    SortSpec,
    UpdateAction,
    apply_update_actions,
    get_path,
    parse_sort,
)

if TYPE_CHECKING:
    from polystore.database.schema import ModelSchema

Record = Mapping[str, Any]
RecordTest = Callable[[Record], bool]


def _ordered(test: Callable[[Any, Any], bool], value: Any, operand: Any) -> bool:
    if value is None:
        return False
    try:
        return test(value, operand)
    except TypeError:
        return False


def _condition_test(condition: Condition, element_contains: bool) -> RecordTest:
    field = condition.field
    op = condition.operator
    operand = condition.operand

    if op is QueryOperator.REGEX:
        pattern = re.compile(operand)

    def equals(found: bool, value: Any, expected: Any) -> bool:
        if expected is None:
            return not found or value is None
        return found and value == expected

    def test(record: Record) -> bool:
        found, value = get_path(record, field)
        if op is QueryOperator.EQ:
            return equals(found, value, operand)
        if op is QueryOperator.NE:
            return not equals(found, value, operand)
        if op is QueryOperator.GT:
            return found and _ordered(lambda a, b: a > b, value, operand)
        if op is QueryOperator.GTE:
            return found and _ordered(lambda a, b: a >= b, value, operand)
        if op is QueryOperator.LT:
            return found and _ordered(lambda a, b: a < b, value, operand)
        if op is QueryOperator.LTE:
            return found and _ordered(lambda a, b: a <= b, value, operand)
        if op is QueryOperator.IN:
            return any(equals(found, value, candidate) for candidate in operand)
        if op is QueryOperator.NIN:
            return not any(equals(found, value, candidate) for candidate in operand)
        if op is QueryOperator.REGEX:
            return isinstance(value, str) and pattern.search(value) is not None
        if op is QueryOperator.EXISTS:
            return found is operand
        if op is QueryOperator.BETWEEN:
            return found and _ordered(lambda a, b: b[0] <= a <= b[1], value, operand)
        if op is QueryOperator.CONTAINS:
            if isinstance(value, list):
                return operand in value
            if isinstance(value, str) and not element_contains:
                return isinstance(operand, str) and operand in value
            return False
        return isinstance(value, str) and value.startswith(operand)

    return test


class MatcherCompiler(QueryCompiler):
    """
    Compiler whose fragment is a Python predicate over records.

    Nested paths resolve through dictionaries. ``$regex`` uses
    ``re.search`` semantics.

    Example:
        >>> match = MatcherCompiler().compile({"tags": {"$contains": "a"}}).fragment
        >>> match({"tags": ["a", "b"]})
        True
    """

    backend = "memory"

    def __init__(self, best_effort: bool = False, backend: Optional[str] = None) -> None:
        super().__init__(best_effort=best_effort)
        if backend:
            self.backend = backend

    def _compile_conditions(
        self,
        conditions: Sequence[Condition],
        schema: Optional["ModelSchema"],
    ) -> CompiledQuery:
        tests = [
            _condition_test(c, self.is_element_contains(c, schema))
            for c in conditions
        ]

        def matches(record: Record) -> bool:
            return all(test(record) for test in tests)

        return CompiledQuery(fragment=matches)

    def _compile_actions(
        self,
        actions: Sequence[UpdateAction],
        schema: Optional["ModelSchema"],
    ) -> CompiledUpdate:
        frozen = list(actions)

        def apply(record: Record) -> Dict[str, Any]:
            return apply_update_actions(record, frozen)

        return CompiledUpdate(fragment=apply)


def sort_key(value: Any) -> Tuple[Any, ...]:
    """
    Total order over mixed-type values.

    Values rank by kind first (null, number, string, mapping, list,
    boolean, date, anything else), then by value within their kind.
    """
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (5, value)
    if isinstance(value, (int, float, Decimal)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, Mapping):
        return (3, tuple((str(k), sort_key(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return (4, tuple(sort_key(item) for item in value))
    if isinstance(value, (datetime, date)):
        return (6, value.isoformat())
    return (7, repr(value))


def sort_records(records: Sequence[Record], sort: SortSpec) -> List[Record]:
    """
    Sort records by a sort spec.

    Missing and null values order first ascending and last descending.
    Fields holding values of different kinds order by kind.
    """
    result = list(records)
    for field, direction in reversed(parse_sort(sort)):
        def key(record: Record, field: str = field) -> Tuple[Any, ...]:
            found, value = get_path(record, field)
            return sort_key(value if found else None)

        result.sort(key=key, reverse=direction == -1)
    return result
