# ==============================================================================
# MONGO QUERY COMPILER - Filter & Update Documents
# ==============================================================================
# Translates canonical conditions into MongoDB filter documents
# Values stay typed BSON values; nothing is rendered into query text
# ==============================================================================

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from bson import ObjectId

from polystore.query.compiler import CompiledQuery, CompiledUpdate, QueryCompiler
from polystore.query.operators import Condition, QueryOperator, UpdateAction, UpdateOperator

if TYPE_CHECKING:
    from polystore.database.schema import ModelSchema


def to_object_id(value: Any) -> Any:
    """Convert 24-hex strings to ObjectId; other values pass through."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def from_object_id(value: Any) -> Any:
    """Render ObjectIds as strings for canonical records."""
    if isinstance(value, ObjectId):
        return str(value)
    return value


class MongoQueryCompiler(QueryCompiler):
    """
    Compiler for MongoDB filter and update documents.

    The canonical identity field maps onto ``_id``; string identities
    that look like ObjectIds are converted so they match documents
    whose ``_id`` was generated by the server.

    Example:
        >>> MongoQueryCompiler().compile({"age": {"$between": [18, 30]}}).fragment
        {'age': {'$gte': 18, '$lte': 30}}
    """

    backend = "mongodb"

    def _field(self, name: str, schema: Optional["ModelSchema"]) -> str:
        primary_key = schema.primary_key if schema is not None else "id"
        return "_id" if name in ("id", primary_key) else name

    def _translate(
        self,
        condition: Condition,
        schema: Optional["ModelSchema"],
        is_id: bool,
    ) -> Dict[str, Any]:
        op = condition.operator
        operand = condition.operand
        if is_id:
            if isinstance(operand, list):
                operand = [to_object_id(v) for v in operand]
            elif isinstance(operand, tuple):
                operand = tuple(to_object_id(v) for v in operand)
            else:
                operand = to_object_id(operand)

        if op is QueryOperator.BETWEEN:
            return {"$gte": operand[0], "$lte": operand[1]}
        if op is QueryOperator.CONTAINS:
            if self.is_element_contains(condition, schema):
                return {"$elemMatch": {"$eq": operand}}
            return {"$regex": re.escape(str(operand))}
        if op is QueryOperator.BEGINS_WITH:
            return {"$regex": "^" + re.escape(operand)}
        return {op.value: operand}

    def _compile_conditions(
        self,
        conditions: Sequence[Condition],
        schema: Optional["ModelSchema"],
    ) -> CompiledQuery:
        query: Dict[str, Dict[str, Any]] = {}
        overflow: List[Dict[str, Any]] = []

        for condition in conditions:
            name = self._field(condition.field, schema)
            clause = self._translate(condition, schema, name == "_id")
            target = query.setdefault(name, {})
            if any(key in target for key in clause):
                # Same operator twice on one field
                overflow.append({name: clause})
            else:
                target.update(clause)

        if overflow:
            parts = [{name: clause} for name, clause in query.items()] + overflow
            return CompiledQuery(fragment={"$and": parts})
        return CompiledQuery(fragment=query)

    def _compile_actions(
        self,
        actions: Sequence[UpdateAction],
        schema: Optional["ModelSchema"],
    ) -> CompiledUpdate:
        document: Dict[str, Dict[str, Any]] = {}

        for action in actions:
            op = action.operator
            if op is UpdateOperator.SET:
                document.setdefault("$set", {})[action.field] = action.operand
            elif op is UpdateOperator.UNSET:
                document.setdefault("$unset", {})[action.field] = ""
            elif op is UpdateOperator.INC:
                document.setdefault("$inc", {})[action.field] = action.operand
            elif op in (UpdateOperator.PUSH, UpdateOperator.APPEND):
                document.setdefault("$push", {})[action.field] = action.operand
            elif op is UpdateOperator.PREPEND:
                document.setdefault("$push", {})[action.field] = {
                    "$each": [action.operand],
                    "$position": 0,
                }
            elif op is UpdateOperator.PULL:
                document.setdefault("$pull", {})[action.field] = action.operand

        return CompiledUpdate(fragment=document)
