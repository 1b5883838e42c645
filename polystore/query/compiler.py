# ==============================================================================
# QUERY COMPILER - Abstract Predicate & Update Compilation
# ==============================================================================
# Validates parsed conditions against a backend's operator support
# Coerces operands through the model schema before translation
# ==============================================================================

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional, Sequence

from polystore.core.exceptions import (
    QueryCompileError,
    UnsupportedOperationError,
    UnsupportedOperatorError,
    ValidationError,
)
from polystore.query.operators import (
    Condition,
    Predicate,
    QueryOperator,
    UpdateAction,
    UpdateExpression,
    UpdateOperator,
    parse_predicate,
    parse_update,
)
from polystore.query.types import FieldType

if TYPE_CHECKING:
    from polystore.database.schema import ModelSchema

logger = logging.getLogger(__name__)

# Operand is not coerced: pattern strings, booleans and substrings
_UNCOERCED = frozenset({
    QueryOperator.REGEX,
    QueryOperator.EXISTS,
    QueryOperator.BEGINS_WITH,
})

_STRING_TYPES = frozenset({FieldType.STRING, FieldType.TEXT, FieldType.UUID})


@dataclass
class CompiledQuery:
    """
    Native predicate produced by a compiler.

    Attributes:
        fragment: Backend-native query object (filter document, SQLAlchemy
            expression, Cypher text or Python callable)
        bindings: Named parameter values referenced by the fragment
    """
    fragment: Any
    bindings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompiledUpdate(CompiledQuery):
    """
    Native update produced by a compiler.

    Attributes:
        deferred: Actions with no atomic translation on this backend,
            left for the adapter to apply by read-modify-write
    """
    deferred: List[UpdateAction] = field(default_factory=list)


class QueryCompiler(ABC):
    """
    Abstract base for per-backend compilers.

    Subclasses declare the operators they translate and implement
    ``_compile_conditions`` and ``_compile_actions``. Parsing, operator
    support checks and schema coercion happen here so every backend
    rejects the same malformed input with the same error.

    Attributes:
        backend: Name used in error messages
        supported_operators: Predicate operators this backend translates
        supported_update_operators: Update operators this backend accepts
        atomic_update_operators: Update operators with a native atomic form
        best_effort: Defer non-atomic update operators instead of raising
    """

    backend: str = "generic"
    supported_operators: FrozenSet[QueryOperator] = frozenset(QueryOperator)
    supported_update_operators: FrozenSet[UpdateOperator] = frozenset(UpdateOperator)
    atomic_update_operators: FrozenSet[UpdateOperator] = frozenset(UpdateOperator)

    def __init__(self, best_effort: bool = False) -> None:
        self.best_effort = best_effort

    # ==========================================================================
    # PUBLIC API
    # ==========================================================================

    def compile(
        self,
        predicate: Optional[Predicate],
        schema: Optional["ModelSchema"] = None,
    ) -> CompiledQuery:
        """
        Compile a predicate mapping into a native query.

        Args:
            predicate: Field-to-literal or field-to-operator-map mapping
            schema: Optional model schema used for operand coercion

        Returns:
            CompiledQuery with native fragment and bindings

        Raises:
            QueryCompileError: Malformed predicate or uncoercible operand
            UnsupportedOperatorError: Operator has no translation here
        """
        conditions = parse_predicate(predicate)
        for condition in conditions:
            if condition.operator not in self.supported_operators:
                raise UnsupportedOperatorError(condition.operator.value, self.backend)

        conditions = [
            self._coerce_condition(self.resolve_field(c, schema), schema)
            for c in conditions
        ]
        compiled = self._compile_conditions(conditions, schema)
        logger.debug(
            f"[{self.backend}] compiled predicate {predicate!r} -> "
            f"{compiled.fragment!r} {compiled.bindings!r}"
        )
        return compiled

    def compile_update(
        self,
        update: UpdateExpression,
        schema: Optional["ModelSchema"] = None,
    ) -> CompiledUpdate:
        """
        Compile an update expression into a native update.

        Args:
            update: Operator-first, field-first or literal update mapping
            schema: Optional model schema used for operand coercion

        Returns:
            CompiledUpdate; ``deferred`` is only populated in best-effort mode

        Raises:
            QueryCompileError: Malformed update or identity field targeted
            UnsupportedOperatorError: Update operator unknown to this backend
            UnsupportedOperationError: Non-atomic operator outside best-effort mode
            ValidationError: A required field would be cleared
        """
        actions = parse_update(update)
        primary_key = schema.primary_key if schema is not None else "id"

        atomic: List[UpdateAction] = []
        deferred: List[UpdateAction] = []
        for action in actions:
            root = action.field.split(".", 1)[0]
            if root in ("id", primary_key):
                raise QueryCompileError(
                    f"The identity field '{root}' cannot be updated",
                    details={"field": action.field},
                )
            if action.operator not in self.supported_update_operators:
                raise UnsupportedOperatorError(action.operator.value, self.backend)

            action = self._coerce_action(action, schema)
            if action.operator in self.atomic_update_operators:
                atomic.append(action)
            elif self.best_effort:
                deferred.append(action)
            else:
                raise UnsupportedOperationError(
                    action.operator.value,
                    self.backend,
                    message=(
                        f"{self.backend} has no atomic form of '{action.operator.value}'; "
                        "enable best-effort updates to apply it by read-modify-write"
                    ),
                )

        compiled = self._compile_actions(atomic, schema)
        compiled = dataclasses.replace(compiled, deferred=deferred)
        logger.debug(
            f"[{self.backend}] compiled update {update!r} -> "
            f"{compiled.fragment!r} {compiled.bindings!r} deferred={deferred!r}"
        )
        return compiled

    def resolve_field(
        self,
        condition: Condition,
        schema: Optional["ModelSchema"],
    ) -> Condition:
        """Map the canonical ``id`` onto a schema's own primary key."""
        if condition.field == "id" and schema is not None and schema.primary_key != "id":
            return dataclasses.replace(condition, field=schema.primary_key)
        return condition

    # ==========================================================================
    # SCHEMA HELPERS
    # ==========================================================================

    @staticmethod
    def field_type(schema: Optional["ModelSchema"], name: str) -> Optional[FieldType]:
        if schema is None:
            return None
        return schema.field_type(name)

    def is_element_contains(
        self,
        condition: Condition,
        schema: Optional["ModelSchema"],
    ) -> bool:
        """
        Decide whether ``$contains`` means element membership.

        Array fields use membership, string fields use substring.
        Without a declared type a string operand means substring.
        """
        declared = self.field_type(schema, condition.field)
        if declared is FieldType.ARRAY:
            return True
        if declared in _STRING_TYPES:
            return False
        return not isinstance(condition.operand, str)

    def _coerce_condition(
        self,
        condition: Condition,
        schema: Optional["ModelSchema"],
    ) -> Condition:
        if schema is None or condition.operator in _UNCOERCED:
            return condition
        declared = schema.field_type(condition.field)
        if declared is None or declared in (FieldType.ARRAY, FieldType.JSON):
            return condition

        op = condition.operator
        operand = condition.operand
        try:
            if op is QueryOperator.CONTAINS:
                if declared in _STRING_TYPES and not isinstance(operand, str):
                    raise QueryCompileError(
                        f"'$contains' on string field '{condition.field}' expects a string",
                        details={"field": condition.field},
                    )
                return condition
            if op in (QueryOperator.IN, QueryOperator.NIN):
                operand = [schema.coerce_value(condition.field, v) for v in operand]
            elif op is QueryOperator.BETWEEN:
                operand = (
                    schema.coerce_value(condition.field, operand[0]),
                    schema.coerce_value(condition.field, operand[1]),
                )
            else:
                operand = schema.coerce_value(condition.field, operand)
        except ValidationError as e:
            raise QueryCompileError(
                f"Operand for '{op.value}' on field '{condition.field}' does not "
                f"match its declared type: {e.message}",
                details={"field": condition.field, "operator": op.value},
            ) from e
        return dataclasses.replace(condition, operand=operand)

    def _coerce_action(
        self,
        action: UpdateAction,
        schema: Optional["ModelSchema"],
    ) -> UpdateAction:
        if schema is None:
            return action
        definition = schema.fields.get(action.field)
        if definition is None:
            return action

        clears = action.operator is UpdateOperator.UNSET or (
            action.operator is UpdateOperator.SET and action.operand is None
        )
        if clears and definition.required:
            raise ValidationError(
                f"Required field '{action.field}' cannot be cleared",
                errors={action.field: "field is required"},
            )
        if action.operator is UpdateOperator.SET:
            return dataclasses.replace(
                action, operand=schema.coerce_value(action.field, action.operand)
            )
        if action.operator is UpdateOperator.INC and definition.type not in (
            FieldType.INTEGER,
            FieldType.NUMBER,
        ):
            raise ValidationError(
                f"Cannot increment non-numeric field '{action.field}'",
                errors={action.field: "not a number"},
            )
        return action

    # ==========================================================================
    # BACKEND TRANSLATION
    # ==========================================================================

    @abstractmethod
    def _compile_conditions(
        self,
        conditions: Sequence[Condition],
        schema: Optional["ModelSchema"],
    ) -> CompiledQuery:
        """Translate AND-combined conditions into a native predicate."""

    @abstractmethod
    def _compile_actions(
        self,
        actions: Sequence[UpdateAction],
        schema: Optional["ModelSchema"],
    ) -> CompiledUpdate:
        """Translate atomic update actions into a native update."""
