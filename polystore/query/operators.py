# ==============================================================================
# OPERATOR ALGEBRA - Canonical Predicate & Update Representation
# ==============================================================================
# Parses backend-agnostic filter/update mappings into typed conditions
# Shared by every per-backend compiler
# ==============================================================================

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from polystore.core.exceptions import QueryCompileError, ValidationError

FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_MISSING = object()


class QueryOperator(str, Enum):
    """Predicate operators understood by every compiler."""
    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"
    NIN = "$nin"
    REGEX = "$regex"
    EXISTS = "$exists"
    BETWEEN = "$between"
    CONTAINS = "$contains"
    BEGINS_WITH = "$beginsWith"


class UpdateOperator(str, Enum):
    """Update operators understood by every compiler."""
    SET = "$set"
    UNSET = "$unset"
    INC = "$inc"
    PUSH = "$push"
    PULL = "$pull"
    APPEND = "$append"
    PREPEND = "$prepend"


COMPARISON_OPERATORS = frozenset({
    QueryOperator.GT,
    QueryOperator.GTE,
    QueryOperator.LT,
    QueryOperator.LTE,
})

LIST_UPDATE_OPERATORS = frozenset({
    UpdateOperator.PUSH,
    UpdateOperator.PULL,
    UpdateOperator.APPEND,
    UpdateOperator.PREPEND,
})


@dataclass(frozen=True)
class Condition:
    """One ``field <operator> operand`` test; conditions combine with AND."""
    field: str
    operator: QueryOperator
    operand: Any


@dataclass(frozen=True)
class UpdateAction:
    """One independent mutation of a single field."""
    field: str
    operator: UpdateOperator
    operand: Any = None


Predicate = Mapping[str, Any]
UpdateExpression = Mapping[str, Any]
SortSpec = Union[str, Mapping[str, Any], Sequence[Tuple[str, Any]], None]

E = TypeVar("E", QueryOperator, UpdateOperator)


# ==============================================================================
# PARSING HELPERS
# ==============================================================================

def validate_field_name(field: Any) -> str:
    """
    Ensure a field name is a dotted identifier path.

    Raises:
        QueryCompileError: If the name is not a valid identifier path
    """
    if not isinstance(field, str) or not FIELD_PATTERN.match(field):
        raise QueryCompileError(
            f"Invalid field name: {field!r}",
            details={"field": repr(field)},
        )
    return field


def is_operator_map(value: Any) -> bool:
    """Return True when every key of a non-empty mapping is a ``$`` operator."""
    if not isinstance(value, Mapping) or not value:
        return False
    dollar = [isinstance(k, str) and k.startswith("$") for k in value]
    if all(dollar):
        return True
    if any(dollar):
        raise QueryCompileError(
            "Operator maps cannot mix '$' operators with literal keys",
            details={"keys": [str(k) for k in value]},
        )
    return False


def _lookup(enum_cls: Type[E], key: str, field: str) -> E:
    try:
        return enum_cls(key)
    except ValueError:
        raise QueryCompileError(
            f"Unknown operator '{key}' on field '{field}'",
            details={"operator": key, "field": field},
        ) from None


def _validate_predicate_operand(field: str, op: QueryOperator, operand: Any) -> Any:
    """Check the operand shape and return its normalized form."""
    def fail(expected: str) -> QueryCompileError:
        return QueryCompileError(
            f"Operator '{op.value}' on field '{field}' expects {expected}, "
            f"got {type(operand).__name__}",
            details={"operator": op.value, "field": field},
        )

    if op in (QueryOperator.IN, QueryOperator.NIN):
        if isinstance(operand, (str, bytes, Mapping)) or not isinstance(
            operand, (list, tuple, set, frozenset)
        ):
            raise fail("an array")
        return list(operand)
    if op is QueryOperator.BETWEEN:
        if not isinstance(operand, (list, tuple)) or len(operand) != 2:
            raise fail("a [low, high] pair")
        if operand[0] is None or operand[1] is None:
            raise fail("non-null bounds")
        return (operand[0], operand[1])
    if op is QueryOperator.EXISTS:
        if not isinstance(operand, bool):
            raise fail("a boolean")
        return operand
    if op is QueryOperator.REGEX:
        if isinstance(operand, re.Pattern):
            operand = operand.pattern
        if not isinstance(operand, str):
            raise fail("a pattern string")
        try:
            re.compile(operand)
        except re.error as e:
            raise QueryCompileError(
                f"Invalid regular expression for field '{field}': {e}",
                details={"operator": op.value, "field": field},
            ) from e
        return operand
    if op is QueryOperator.BEGINS_WITH:
        if not isinstance(operand, str):
            raise fail("a string")
        return operand
    if op in COMPARISON_OPERATORS or op is QueryOperator.CONTAINS:
        if operand is None:
            raise fail("a non-null value")
        return operand
    return operand


def _validate_update_operand(field: str, op: UpdateOperator, operand: Any) -> Any:
    if op is UpdateOperator.INC:
        if isinstance(operand, bool) or not isinstance(operand, (int, float)):
            raise QueryCompileError(
                f"Operator '$inc' on field '{field}' expects a number, "
                f"got {type(operand).__name__}",
                details={"operator": op.value, "field": field},
            )
    if op is UpdateOperator.UNSET:
        return None
    return operand


# ==============================================================================
# PUBLIC PARSERS
# ==============================================================================

def parse_predicate(predicate: Optional[Predicate]) -> List[Condition]:
    """
    Parse a predicate mapping into AND-combined conditions.

    Args:
        predicate: ``{field: literal}`` or ``{field: {"$op": operand}}``;
            ``None`` or ``{}`` matches everything

    Returns:
        Conditions in mapping order

    Raises:
        QueryCompileError: On unknown operators, bad operand shapes,
            logical operators or invalid field names
    """
    if predicate is None:
        return []
    if not isinstance(predicate, Mapping):
        raise QueryCompileError(
            f"Predicate must be a mapping, got {type(predicate).__name__}"
        )

    conditions: List[Condition] = []
    for field, value in predicate.items():
        if isinstance(field, str) and field.startswith("$"):
            raise QueryCompileError(
                f"Logical operator '{field}' is not supported in predicates; "
                "fields combine with implicit AND",
                details={"operator": field},
            )
        validate_field_name(field)

        if is_operator_map(value):
            for key, operand in value.items():
                op = _lookup(QueryOperator, key, field)
                conditions.append(
                    Condition(field, op, _validate_predicate_operand(field, op, operand))
                )
        else:
            conditions.append(Condition(field, QueryOperator.EQ, value))
    return conditions


def parse_update(update: UpdateExpression) -> List[UpdateAction]:
    """
    Parse an update expression into independent per-field actions.

    Accepts operator-first (``{"$inc": {"n": 1}}``), field-first
    (``{"n": {"$inc": 1}}``) and literal (``{"n": 1}``, meaning ``$set``)
    forms, mixed freely.

    Raises:
        QueryCompileError: On empty updates, unknown operators, bad
            operands or a field targeted more than once
    """
    if not isinstance(update, Mapping) or not update:
        raise QueryCompileError("Update expression must be a non-empty mapping")

    actions: List[UpdateAction] = []

    def add(field: Any, op: UpdateOperator, operand: Any) -> None:
        validate_field_name(field)
        actions.append(UpdateAction(field, op, _validate_update_operand(field, op, operand)))

    for key, value in update.items():
        if isinstance(key, str) and key.startswith("$"):
            op = _lookup(UpdateOperator, key, "<update>")
            if not isinstance(value, Mapping) or not value:
                raise QueryCompileError(
                    f"Operator '{key}' expects a non-empty mapping of fields",
                    details={"operator": key},
                )
            for field, operand in value.items():
                add(field, op, operand)
        elif is_operator_map(value):
            if len(value) != 1:
                raise QueryCompileError(
                    f"Field '{key}' may carry only one update operator",
                    details={"field": str(key)},
                )
            (op_key, operand), = value.items()
            add(key, _lookup(UpdateOperator, op_key, str(key)), operand)
        else:
            add(key, UpdateOperator.SET, value)

    seen = set()
    for action in actions:
        if action.field in seen:
            raise QueryCompileError(
                f"Field '{action.field}' is targeted by more than one update",
                details={"field": action.field},
            )
        seen.add(action.field)
    return actions


def parse_sort(sort: SortSpec) -> List[Tuple[str, int]]:
    """
    Normalize a sort spec into ``[(field, 1 | -1), ...]``.

    Accepts a field name, a mapping ``{field: direction}`` or a list
    of pairs. Directions may be 1/-1 or "asc"/"desc".
    """
    if sort is None:
        return []
    if isinstance(sort, str):
        items: Sequence[Tuple[str, Any]] = [(sort, 1)]
    elif isinstance(sort, Mapping):
        items = list(sort.items())
    else:
        items = list(sort)

    result = []
    for field, direction in items:
        validate_field_name(field)
        if isinstance(direction, str):
            direction = {"asc": 1, "desc": -1}.get(direction.lower(), direction)
        if direction not in (1, -1):
            raise QueryCompileError(
                f"Invalid sort direction for '{field}': {direction!r}",
                details={"field": field},
            )
        result.append((field, int(direction)))
    return result


# ==============================================================================
# IN-PROCESS EVALUATION
# ==============================================================================

def get_path(record: Mapping[str, Any], field: str) -> Tuple[bool, Any]:
    """Resolve a dotted path; returns ``(found, value)``."""
    current: Any = record
    for part in field.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _set_path(record: Dict[str, Any], field: str, value: Any) -> None:
    *parents, leaf = field.split(".")
    current = record
    for part in parents:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[leaf] = value


def _unset_path(record: Dict[str, Any], field: str) -> None:
    *parents, leaf = field.split(".")
    current: Any = record
    for part in parents:
        current = current.get(part) if isinstance(current, dict) else None
    if isinstance(current, dict):
        current.pop(leaf, None)


def apply_update_actions(
    record: Mapping[str, Any],
    actions: Sequence[UpdateAction],
) -> Dict[str, Any]:
    """
    Apply update actions to a copy of a record.

    Used by backends that mutate values in process (key-value stores
    and best-effort list updates).

    Raises:
        ValidationError: When an action meets an incompatible value
    """
    updated = copy.deepcopy(dict(record))
    for action in actions:
        found, current = get_path(updated, action.field)
        op = action.operator

        if op is UpdateOperator.SET:
            _set_path(updated, action.field, action.operand)
        elif op is UpdateOperator.UNSET:
            _unset_path(updated, action.field)
        elif op is UpdateOperator.INC:
            base = current if found and current is not None else 0
            if isinstance(base, bool) or not isinstance(base, (int, float)):
                raise ValidationError(
                    f"Cannot increment non-numeric field '{action.field}'",
                    errors={action.field: "not a number"},
                )
            _set_path(updated, action.field, base + action.operand)
        else:
            items = current if found and current is not None else []
            if not isinstance(items, list):
                raise ValidationError(
                    f"Cannot apply '{op.value}' to non-array field '{action.field}'",
                    errors={action.field: "not an array"},
                )
            if op in (UpdateOperator.PUSH, UpdateOperator.APPEND):
                items = items + [action.operand]
            elif op is UpdateOperator.PREPEND:
                items = [action.operand] + items
            else:
                items = [item for item in items if item != action.operand]
            _set_path(updated, action.field, items)
    return updated
