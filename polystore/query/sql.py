# ==============================================================================
# SQL QUERY COMPILER - SQLAlchemy Core Expressions
# ==============================================================================
# Translates canonical conditions into SQLAlchemy boolean expressions
# Every value travels as a bind parameter
# ==============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Dialect
from sqlalchemy.sql.elements import ColumnElement

from polystore.core.exceptions import QueryCompileError, UnsupportedOperatorError
from polystore.query.compiler import CompiledQuery, CompiledUpdate, QueryCompiler
from polystore.query.operators import (
    LIST_UPDATE_OPERATORS,
    Condition,
    QueryOperator,
    UpdateAction,
    UpdateOperator,
)
from polystore.query.types import FieldType

if TYPE_CHECKING:
    from polystore.database.schema import FieldDefinition, ModelSchema


_SCALAR_TYPES = {
    FieldType.STRING: sa.String,
    FieldType.TEXT: sa.Text,
    FieldType.INTEGER: sa.Integer,
    FieldType.NUMBER: sa.Float,
    FieldType.BOOLEAN: sa.Boolean,
    FieldType.DATE: sa.DateTime,
    FieldType.UUID: lambda: sa.String(36),
}

_DIALECTS = {
    "postgresql": postgresql.dialect,
    "sqlite": sqlite.dialect,
}


def sa_type_for(
    definition: Optional["FieldDefinition"],
    dialect: str = "postgresql",
) -> Any:
    """
    Map a field definition onto a SQLAlchemy column type.

    Arrays are native ``ARRAY`` columns on PostgreSQL and JSON
    documents elsewhere.
    """
    if definition is None:
        return sa.types.NullType()
    if definition.type is FieldType.JSON:
        if dialect == "postgresql":
            return postgresql.JSONB(none_as_null=True)
        return sa.JSON(none_as_null=True)
    if definition.type is FieldType.ARRAY:
        if dialect == "postgresql":
            item_type = _SCALAR_TYPES.get(definition.items or FieldType.TEXT, sa.Text)
            return postgresql.ARRAY(item_type())
        return sa.JSON(none_as_null=True)
    return _SCALAR_TYPES.get(definition.type, sa.String)()


class SQLQueryCompiler(QueryCompiler):
    """
    Compiler for SQLAlchemy Core ``WHERE`` and ``SET`` clauses.

    Nested paths are rejected: relational rows are flat. ``$exists``
    has no relational meaning and is emulated as ``IS [NOT] NULL``.

    Args:
        dialect: ``"postgresql"`` or ``"sqlite"``
        best_effort: Defer list operators that SQLite cannot apply atomically

    Example:
        >>> compiled = SQLQueryCompiler(dialect="sqlite").compile({"age": {"$gt": 21}})
        >>> str(compiled.fragment)
        'age > :age_1'
    """

    def __init__(self, dialect: str = "postgresql", best_effort: bool = False) -> None:
        if dialect not in _DIALECTS:
            raise ValueError(f"Unsupported SQL dialect: {dialect}")
        super().__init__(best_effort=best_effort)
        self.dialect = dialect
        self.backend = dialect
        self._sa_dialect: Dialect = _DIALECTS[dialect]()
        if dialect != "postgresql":
            self.atomic_update_operators = frozenset(
                op for op in UpdateOperator if op not in LIST_UPDATE_OPERATORS
            )

    # ==========================================================================
    # COLUMN RESOLUTION
    # ==========================================================================

    def column(self, name: str, schema: Optional["ModelSchema"]) -> ColumnElement:
        if "." in name:
            raise QueryCompileError(
                f"Nested field '{name}' is not addressable on {self.backend}",
                details={"field": name},
            )
        definition = schema.fields.get(name) if schema is not None else None
        if schema is not None and definition is None and name != schema.primary_key:
            raise QueryCompileError(
                f"Unknown field '{name}' for model '{schema.name}'",
                details={"field": name, "model": schema.name},
            )
        return sa.column(name, sa_type_for(definition, self.dialect))

    def bindings_of(self, clause: Any) -> Dict[str, Any]:
        """Bind parameter values of a compiled clause."""
        return dict(clause.compile(dialect=self._sa_dialect).params)

    # ==========================================================================
    # PREDICATES
    # ==========================================================================

    def _translate(self, condition: Condition, schema: Optional["ModelSchema"]) -> Any:
        col = self.column(condition.field, schema)
        op = condition.operator
        operand = condition.operand

        if op is QueryOperator.EQ:
            return col.is_(None) if operand is None else col == operand
        if op is QueryOperator.NE:
            if operand is None:
                return col.is_not(None)
            return sa.or_(col != operand, col.is_(None))
        if op is QueryOperator.GT:
            return col > operand
        if op is QueryOperator.GTE:
            return col >= operand
        if op is QueryOperator.LT:
            return col < operand
        if op is QueryOperator.LTE:
            return col <= operand
        if op is QueryOperator.IN:
            values = [v for v in operand if v is not None]
            clause = col.in_(values) if values else sa.false()
            return sa.or_(clause, col.is_(None)) if None in operand else clause
        if op is QueryOperator.NIN:
            values = [v for v in operand if v is not None]
            if None in operand:
                clause = col.is_not(None)
                return sa.and_(clause, col.not_in(values)) if values else clause
            if not values:
                return sa.true()
            return sa.or_(col.not_in(values), col.is_(None))
        if op is QueryOperator.REGEX:
            return col.regexp_match(operand)
        if op is QueryOperator.EXISTS:
            return col.is_not(None) if operand else col.is_(None)
        if op is QueryOperator.BETWEEN:
            return col.between(operand[0], operand[1])
        if op is QueryOperator.CONTAINS:
            if self.is_element_contains(condition, schema):
                raise UnsupportedOperatorError(
                    op.value,
                    self.backend,
                    message=(
                        f"Array membership '$contains' on '{condition.field}' "
                        f"is not supported by {self.backend}"
                    ),
                )
            return col.contains(operand, autoescape=True)
        if op is QueryOperator.BEGINS_WITH:
            return col.startswith(operand, autoescape=True)
        raise UnsupportedOperatorError(op.value, self.backend)

    def _compile_conditions(
        self,
        conditions: Sequence[Condition],
        schema: Optional["ModelSchema"],
    ) -> CompiledQuery:
        clauses = [self._translate(c, schema) for c in conditions]
        if not clauses:
            return CompiledQuery(fragment=sa.true())
        fragment = clauses[0] if len(clauses) == 1 else sa.and_(*clauses)
        return CompiledQuery(fragment=fragment, bindings=self.bindings_of(fragment))

    # ==========================================================================
    # UPDATES
    # ==========================================================================

    def _compile_actions(
        self,
        actions: Sequence[UpdateAction],
        schema: Optional["ModelSchema"],
    ) -> CompiledUpdate:
        values: Dict[str, Any] = {}
        columns: List[ColumnElement] = []

        for action in actions:
            col = self.column(action.field, schema)
            columns.append(sa.column(action.field, col.type))
            op = action.operator
            if op is UpdateOperator.SET:
                values[action.field] = action.operand
            elif op is UpdateOperator.UNSET:
                values[action.field] = None
            elif op is UpdateOperator.INC:
                values[action.field] = sa.func.coalesce(col, 0) + action.operand
            elif op in (UpdateOperator.PUSH, UpdateOperator.APPEND):
                values[action.field] = sa.func.array_append(col, action.operand)
            elif op is UpdateOperator.PREPEND:
                values[action.field] = sa.func.array_prepend(action.operand, col)
            elif op is UpdateOperator.PULL:
                values[action.field] = sa.func.array_remove(col, action.operand)

        bindings: Dict[str, Any] = {}
        if values:
            statement = sa.update(sa.table("polystore_update", *columns)).values(values)
            bindings = self.bindings_of(statement)
        return CompiledUpdate(fragment=values, bindings=bindings)
