# ==============================================================================
# CYPHER QUERY COMPILER - Parameterized WHERE / SET Clauses
# ==============================================================================
# Identifiers are validated and backtick-quoted
# Values are always passed as $parameters
# ==============================================================================

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from polystore.core.exceptions import QueryCompileError
from polystore.query.compiler import CompiledQuery, CompiledUpdate, QueryCompiler
from polystore.query.operators import Condition, QueryOperator, UpdateAction, UpdateOperator

if TYPE_CHECKING:
    from polystore.database.schema import ModelSchema

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """
    Validate and backtick-quote a label, relationship type or property.

    Raises:
        QueryCompileError: If the name is not a plain identifier
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise QueryCompileError(
            f"Invalid Cypher identifier: {name!r}",
            details={"identifier": repr(name)},
        )
    return f"`{name}`"


class CypherQueryCompiler(QueryCompiler):
    """
    Compiler for Cypher predicates over a single bound variable.

    Predicate parameters are named ``p0, p1, ...`` and update
    parameters ``u0, u1, ...`` so both can share one statement.

    Args:
        variable: Name of the node or relationship variable
        best_effort: Unused; every update operator has a Cypher form

    Example:
        >>> compiled = CypherQueryCompiler().compile({"age": {"$gte": 21}})
        >>> compiled.fragment, compiled.bindings
        ('n.`age` >= $p0', {'p0': 21})
    """

    backend = "neo4j"

    def __init__(self, variable: str = "n", best_effort: bool = False) -> None:
        super().__init__(best_effort=best_effort)
        if not IDENTIFIER_PATTERN.match(variable):
            raise ValueError(f"Invalid Cypher variable: {variable!r}")
        self.variable = variable

    def _property(self, name: str) -> str:
        if "." in name:
            raise QueryCompileError(
                f"Nested field '{name}' is not addressable on {self.backend}",
                details={"field": name},
            )
        return f"{self.variable}.{quote_identifier(name)}"

    # ==========================================================================
    # PREDICATES
    # ==========================================================================

    def _translate(
        self,
        condition: Condition,
        schema: Optional["ModelSchema"],
        bindings: Dict[str, Any],
    ) -> str:
        prop = self._property(condition.field)
        op = condition.operator
        operand = condition.operand

        def bind(value: Any) -> str:
            name = f"p{len(bindings)}"
            bindings[name] = value
            return f"${name}"

        if op is QueryOperator.EQ:
            return f"{prop} IS NULL" if operand is None else f"{prop} = {bind(operand)}"
        if op is QueryOperator.NE:
            if operand is None:
                return f"{prop} IS NOT NULL"
            return f"({prop} IS NULL OR {prop} <> {bind(operand)})"
        if op is QueryOperator.GT:
            return f"{prop} > {bind(operand)}"
        if op is QueryOperator.GTE:
            return f"{prop} >= {bind(operand)}"
        if op is QueryOperator.LT:
            return f"{prop} < {bind(operand)}"
        if op is QueryOperator.LTE:
            return f"{prop} <= {bind(operand)}"
        if op is QueryOperator.IN:
            values = [v for v in operand if v is not None]
            clause = f"{prop} IN {bind(values)}"
            return f"({clause} OR {prop} IS NULL)" if None in operand else clause
        if op is QueryOperator.NIN:
            values = [v for v in operand if v is not None]
            if None in operand:
                return f"({prop} IS NOT NULL AND NOT {prop} IN {bind(values)})"
            return f"({prop} IS NULL OR NOT {prop} IN {bind(values)})"
        if op is QueryOperator.REGEX:
            return f"{prop} =~ {bind(operand)}"
        if op is QueryOperator.EXISTS:
            return f"{prop} IS NOT NULL" if operand else f"{prop} IS NULL"
        if op is QueryOperator.BETWEEN:
            low, high = bind(operand[0]), bind(operand[1])
            return f"({prop} >= {low} AND {prop} <= {high})"
        if op is QueryOperator.CONTAINS:
            if self.is_element_contains(condition, schema):
                return f"{bind(operand)} IN {prop}"
            return f"{prop} CONTAINS {bind(operand)}"
        return f"{prop} STARTS WITH {bind(operand)}"

    def _compile_conditions(
        self,
        conditions: Sequence[Condition],
        schema: Optional["ModelSchema"],
    ) -> CompiledQuery:
        bindings: Dict[str, Any] = {}
        clauses = [self._translate(c, schema, bindings) for c in conditions]
        return CompiledQuery(
            fragment=" AND ".join(clauses) if clauses else "true",
            bindings=bindings,
        )

    # ==========================================================================
    # UPDATES
    # ==========================================================================

    def _compile_actions(
        self,
        actions: Sequence[UpdateAction],
        schema: Optional["ModelSchema"],
    ) -> CompiledUpdate:
        sets: List[str] = []
        removes: List[str] = []
        bindings: Dict[str, Any] = {}

        def bind(value: Any) -> str:
            name = f"u{len(bindings)}"
            bindings[name] = value
            return f"${name}"

        for action in actions:
            prop = self._property(action.field)
            op = action.operator
            if op is UpdateOperator.SET:
                if action.operand is None:
                    removes.append(prop)
                else:
                    sets.append(f"{prop} = {bind(action.operand)}")
            elif op is UpdateOperator.UNSET:
                removes.append(prop)
            elif op is UpdateOperator.INC:
                sets.append(f"{prop} = coalesce({prop}, 0) + {bind(action.operand)}")
            elif op in (UpdateOperator.PUSH, UpdateOperator.APPEND):
                sets.append(f"{prop} = coalesce({prop}, []) + {bind([action.operand])}")
            elif op is UpdateOperator.PREPEND:
                sets.append(f"{prop} = {bind([action.operand])} + coalesce({prop}, [])")
            elif op is UpdateOperator.PULL:
                sets.append(
                    f"{prop} = [x IN coalesce({prop}, []) WHERE x <> {bind(action.operand)}]"
                )

        parts = []
        if sets:
            parts.append("SET " + ", ".join(sets))
        if removes:
            parts.append("REMOVE " + ", ".join(removes))
        return CompiledUpdate(fragment=" ".join(parts), bindings=bindings)
