# ==============================================================================
# QUERY PACKAGE INITIALIZATION
# ==============================================================================

"""
Query Module
============

Backend-agnostic operator algebra and its per-backend compilers:
- operators: predicate/update parsing and in-process evaluation
- compiler: abstract compiler and compiled result types
- mongo, sql, cypher, matcher: native translations
"""

from polystore.query.types import FieldType
from polystore.query.operators import (
    Condition,
    QueryOperator,
    UpdateAction,
    UpdateOperator,
    apply_update_actions,
    parse_predicate,
    parse_sort,
    parse_update,
)
from polystore.query.compiler import CompiledQuery, CompiledUpdate, QueryCompiler
from polystore.query.mongo import MongoQueryCompiler
from polystore.query.sql import SQLQueryCompiler
from polystore.query.cypher import CypherQueryCompiler
from polystore.query.matcher import MatcherCompiler, sort_records

__all__ = [
    "FieldType",
    "Condition",
    "QueryOperator",
    "UpdateAction",
    "UpdateOperator",
    "apply_update_actions",
    "parse_predicate",
    "parse_sort",
    "parse_update",
    "CompiledQuery",
    "CompiledUpdate",
    "QueryCompiler",
    "MongoQueryCompiler",
    "SQLQueryCompiler",
    "CypherQueryCompiler",
    "MatcherCompiler",
    "sort_records",
]
