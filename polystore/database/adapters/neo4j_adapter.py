# ==============================================================================
# NEO4J ADAPTER - Async Bolt Driver Implementation
# ==============================================================================
# Graph database adapter; models map onto node labels
# Every statement is parameterized Cypher with quoted identifiers
# ==============================================================================

from __future__ import annotations

import copy
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncTransaction
from neo4j.exceptions import ConstraintError, ServiceUnavailable, SessionExpired

from polystore.core.exceptions import (
    ConnectionError,
    NotFoundError,
    PolystoreError,
    ValidationError,
)
from polystore.core.settings import settings
from polystore.database.adapters.base_adapter import (
    AdapterCapabilities,
    BaseDatabaseAdapter,
    Record,
)
from polystore.database.results import (
    BulkItemError,
    BulkWriteResult,
    DeleteResult,
    UpdateResult,
)
from polystore.database.schema import ModelSchema
from polystore.database.unit_of_work import UnitOfWork
from polystore.query.cypher import CypherQueryCompiler, quote_identifier
from polystore.query.operators import Predicate, SortSpec, UpdateExpression, parse_sort
from polystore.query.types import FieldType
from polystore.utils.helpers import chunked, deserialize_value, generate_uuid, serialize_value

logger = logging.getLogger(__name__)

R = TypeVar("R")


def to_native(value: Any) -> Any:
    """
    Convert driver values (temporal types, nodes) into plain Python.
    """
    if hasattr(value, "to_native"):
        return value.to_native()
    if isinstance(value, list):
        return [to_native(item) for item in value]
    if isinstance(value, Mapping) or hasattr(value, "items"):
        return {key: to_native(item) for key, item in value.items()}
    return value


class Neo4jAdapter(BaseDatabaseAdapter):
    """
    Neo4j graph database adapter using the official async driver.

    Models are node labels; records are node properties. Map values
    (``json`` fields) are stored as JSON strings because Neo4j
    properties cannot hold maps.

    Features:
        - Unique constraints and indexes from model schemas
        - Relationship creation and lookup between model nodes
        - Explicit transactions over one session
        - Driver temporal values normalized to ``datetime``

    Config:
        uri: Bolt URI (``neo4j://`` or ``bolt://``)
        username, password: Basic auth credentials
        database: Target database (server default when omitted)
        pool_size: Maximum connection pool size
        batch_size: Nodes per ``UNWIND`` in ``bulk_create``

    Example:
        >>> adapter = Neo4jAdapter({"uri": "neo4j://localhost:7687",
        ...                         "username": "neo4j", "password": "secret"})
        >>> await adapter.initialize()
        >>> alice = await adapter.create("Person", {"name": "Alice"})
        >>> bob = await adapter.create("Person", {"name": "Bob"})
        >>> await adapter.create_relationship("Person", alice["id"], "Person", bob["id"], "KNOWS")
    """

    backend_name = "neo4j"
    capabilities = AdapterCapabilities(regex_dialect="java")
    duplicate_errors = (ConstraintError,)
    connection_errors = (ServiceUnavailable, SessionExpired)

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.config: Dict[str, Any] = dict(config or {})
        self.database: Optional[str] = self.config.get("database")
        self.batch_size = int(self.config.get("batch_size", settings.BATCH_SIZE))
        self.default_limit: Optional[int] = self.config.get("default_limit")
        self._compiler = CypherQueryCompiler()
        self._driver: Optional[AsyncDriver] = None
        self._tx: Optional[AsyncTransaction] = None
        self._schemas: Dict[str, ModelSchema] = {}

    # ==========================================================================
    # LIFECYCLE METHODS
    # ==========================================================================

    async def initialize(self) -> None:
        """
        Create the driver and verify connectivity.

        Raises:
            ConnectionError: If the server is unreachable or rejects the credentials
        """
        if self._driver is not None:
            return

        driver = AsyncGraphDatabase.driver(
            self.config["uri"],
            auth=(self.config.get("username"), self.config.get("password")),
            max_connection_pool_size=int(
                self.config.get("pool_size", settings.DB_POOL_SIZE)
            ),
        )
        try:
            await driver.verify_connectivity()
        except Exception as e:
            await driver.close()
            logger.error(f"Failed to connect to Neo4j: {e}")
            raise ConnectionError(
                f"Neo4j connection failed: {e}",
                operation="initialize",
                details={"backend": self.backend_name},
            ) from e

        self._driver = driver
        logger.info(f"Connected to Neo4j: {self.config['uri']}")

    async def close(self) -> None:
        """Close the driver and its pool."""
        if self._driver is None:
            return
        await self._driver.close()
        self._driver = None
        logger.info("Disconnected from Neo4j")

    async def health_check(self) -> bool:
        if self._driver is None:
            return False
        try:
            await self._driver.verify_connectivity()
            return True
        except Exception as e:
            logger.warning(f"Neo4j health check failed: {e}")
            return False

    # ==========================================================================
    # STATEMENT EXECUTION
    # ==========================================================================

    def _require_driver(self) -> AsyncDriver:
        if self._driver is None:
            raise ConnectionError(
                "Neo4j adapter not initialized. Call initialize() first.",
                details={"backend": self.backend_name},
            )
        return self._driver

    async def _run(
        self,
        statement: str,
        params: Optional[Mapping[str, Any]] = None,
        autocommit: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Run one statement and fetch every row as a dictionary.

        Inside a transaction the statement joins it unless
        ``autocommit`` is set (schema statements cannot share a
        transaction with data writes).
        """
        logger.debug(f"[neo4j] {statement} {params!r}")
        if self._tx is not None and not autocommit:
            result = await self._tx.run(statement, dict(params or {}))
            return await result.data()

        driver = self._require_driver()
        async with driver.session(database=self.database) as session:
            result = await session.run(statement, dict(params or {}))
            return await result.data()

    def _bind(self, tx: AsyncTransaction) -> "Neo4jAdapter":
        bound = copy.copy(self)
        bound._tx = tx
        return bound

    # ==========================================================================
    # RECORD CONVERSION
    # ==========================================================================

    def _primary_key(self, model: str) -> str:
        schema = self._schemas.get(model)
        return schema.primary_key if schema is not None else "id"

    def _to_properties(self, model: str, data: Any) -> Dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError(
                f"Records for '{model}' must be mappings, got {type(data).__name__}",
                errors={"record": "not a mapping"},
            )
        schema = self._schemas.get(model)
        primary_key = self._primary_key(model)
        record = dict(data)
        if primary_key != "id" and "id" in record:
            record.setdefault(primary_key, record.pop("id"))
        if schema is not None:
            record = schema.validate_record(record)
        if record.get(primary_key) is None:
            record[primary_key] = generate_uuid()

        properties: Dict[str, Any] = {}
        for name, value in record.items():
            quote_identifier(name)
            if value is None:
                continue
            if isinstance(value, Mapping) or (
                schema is not None and schema.field_type(name) is FieldType.JSON
            ):
                value = serialize_value(value)
            properties[name] = value
        return properties

    def _to_record(self, model: Optional[str], properties: Mapping[str, Any]) -> Record:
        record = to_native(dict(properties))
        schema = self._schemas.get(model) if model else None
        if schema is not None:
            for name, definition in schema.fields.items():
                if definition.type is FieldType.JSON and isinstance(record.get(name), str):
                    record[name] = deserialize_value(record[name])
            if schema.primary_key != "id" and schema.primary_key in record:
                record["id"] = record[schema.primary_key]
        return record

    def _match(
        self,
        model: str,
        predicate: Optional[Predicate],
    ) -> Tuple[str, Dict[str, Any]]:
        compiled = self._compiler.compile(predicate, self._schemas.get(model))
        clause = f"MATCH (n:{quote_identifier(model)}) WHERE {compiled.fragment}"
        return clause, dict(compiled.bindings)

    # ==========================================================================
    # CRUD OPERATIONS
    # ==========================================================================

    async def create(
        self,
        model: str,
        data: Union[Mapping[str, Any], List[Mapping[str, Any]]],
        **options: Any,
    ) -> Union[Record, List[Record]]:
        label = quote_identifier(model)
        if isinstance(data, list):
            rows = [self._to_properties(model, item) for item in data]
            with self.guard("create", model):
                result = await self._run(
                    f"UNWIND $rows AS row CREATE (n:{label}) SET n = row "
                    "RETURN properties(n) AS record",
                    {"rows": rows},
                )
            return [self._to_record(model, row["record"]) for row in result]

        properties = self._to_properties(model, data)
        with self.guard("create", model):
            result = await self._run(
                f"CREATE (n:{label}) SET n = $props RETURN properties(n) AS record",
                {"props": properties},
            )
        return self._to_record(model, result[0]["record"])

    async def find_one(
        self,
        model: str,
        predicate: Optional[Predicate] = None,
        **options: Any,
    ) -> Optional[Record]:
        records = await self.find_many(model, predicate, limit=1, **options)
        return records[0] if records else None

    async def find_many(
        self,
        model: str,
        predicate: Optional[Predicate] = None,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        sort: SortSpec = None,
        fields: Optional[Sequence[str]] = None,
        **options: Any,
    ) -> List[Record]:
        match, params = self._match(model, predicate)
        primary_key = self._primary_key(model)

        parts = [match, "WITH n"]
        order = [
            f"n.{quote_identifier(primary_key if name == 'id' else name)} "
            f"{'DESC' if direction == -1 else 'ASC'}"
            for name, direction in parse_sort(sort)
        ]
        if order:
            parts.append("ORDER BY " + ", ".join(order))
        if offset:
            parts.append("SKIP $skip")
            params["skip"] = int(offset)
        bound = limit if limit is not None else self.default_limit
        if bound is not None:
            parts.append("LIMIT $limit")
            params["limit"] = int(bound)
        parts.append("RETURN properties(n) AS record")

        with self.guard("find_many", model):
            rows = await self._run(" ".join(parts), params)
        return [self.project(self._to_record(model, row["record"]), fields) for row in rows]

    async def update(
        self,
        model: str,
        predicate: Optional[Predicate],
        update: UpdateExpression,
        **options: Any,
    ) -> UpdateResult:
        schema = self._schemas.get(model)
        match, params = self._match(model, predicate)
        compiled = self._compiler.compile_update(update, schema)
        for name, value in compiled.bindings.items():
            params[name] = serialize_value(value) if isinstance(value, Mapping) else value

        with self.guard("update", model):
            rows = await self._run(
                f"{match} {compiled.fragment} RETURN count(n) AS matched", params
            )
        matched = rows[0]["matched"] if rows else 0
        return UpdateResult(matched_count=matched, modified_count=matched)

    async def delete(
        self,
        model: str,
        predicate: Optional[Predicate],
        **options: Any,
    ) -> DeleteResult:
        match, params = self._match(model, predicate)
        with self.guard("delete", model):
            rows = await self._run(
                f"{match} WITH collect(n) AS nodes, count(n) AS deleted "
                "FOREACH (x IN nodes | DETACH DELETE x) RETURN deleted",
                params,
            )
        return DeleteResult(deleted_count=rows[0]["deleted"] if rows else 0)

    async def count(self, model: str, predicate: Optional[Predicate] = None) -> int:
        match, params = self._match(model, predicate)
        with self.guard("count", model):
            rows = await self._run(f"{match} RETURN count(n) AS total", params)
        return rows[0]["total"] if rows else 0

    # ==========================================================================
    # BULK OPERATIONS
    # ==========================================================================

    async def bulk_create(
        self,
        model: str,
        records: Sequence[Mapping[str, Any]],
        **options: Any,
    ) -> BulkWriteResult:
        """
        Create nodes with one ``UNWIND`` statement per batch.

        Outside a transaction a failed batch is retried node by node
        so each failure is reported against its own index. Inside a
        transaction the server aborts on the first error, so every
        item of the failed batch is reported.
        """
        label = quote_identifier(model)
        primary_key = self._primary_key(model)
        result = BulkWriteResult()

        prepared = []
        for index, data in enumerate(records):
            try:
                prepared.append((index, self._to_properties(model, data)))
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))

        for batch in chunked(prepared, self.batch_size):
            rows = [row for _, row in batch]
            try:
                with self.guard("bulk_create", model):
                    await self._run(
                        f"UNWIND $rows AS row CREATE (n:{label}) SET n = row",
                        {"rows": rows},
                    )
            except PolystoreError as e:
                if self._tx is not None:
                    result.errors.extend(BulkItemError(index, e) for index, _ in batch)
                    continue
                logger.warning(
                    f"neo4j batch create of '{model}' failed, "
                    f"retrying {len(rows)} node(s) individually: {e}"
                )
                for index, row in batch:
                    try:
                        with self.guard("bulk_create", model):
                            await self._run(
                                f"CREATE (n:{label}) SET n = $props", {"props": row}
                            )
                    except PolystoreError as item_error:
                        result.errors.append(BulkItemError(index, item_error))
                    else:
                        result.inserted_count += 1
                        result.inserted_ids.append(row[primary_key])
                continue
            result.inserted_count += len(rows)
            result.inserted_ids.extend(row[primary_key] for row in rows)

        result.errors.sort(key=lambda error: error.index)
        return result

    # ==========================================================================
    # NATIVE ESCAPE HATCHES
    # ==========================================================================

    async def aggregate(self, model: str, pipeline: Any) -> List[Record]:
        """
        Run a caller-written Cypher statement and return its rows.

        ``pipeline`` is a statement string or a ``(statement, params)`` pair.
        """
        statement, params = (pipeline, None) if isinstance(pipeline, str) else pipeline
        with self.guard("aggregate", model):
            rows = await self._run(statement, params)
        return [to_native(row) for row in rows]

    async def query(
        self,
        raw: Any,
        params: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> Any:
        with self.guard("query"):
            rows = await self._run(raw, params)
        return [to_native(row) for row in rows]

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================

    async def transaction(
        self,
        callback: Callable[[Any], Awaitable[R]],
        **options: Any,
    ) -> R:
        """
        Run ``callback(handle)`` in one explicit transaction.
        """
        if self._tx is not None:
            return await callback(self)

        driver = self._require_driver()
        with self.guard("transaction"):
            session = driver.session(database=self.database)
            try:
                tx = await session.begin_transaction()
            except Exception:
                await session.close()
                raise

        uow = UnitOfWork(
            backend=self.backend_name,
            handle=self._bind(tx),
            commit=tx.commit,
            rollback=tx.rollback,
            release=session.close,
        )
        return await uow.run(callback)

    # ==========================================================================
    # GRAPH OPERATIONS
    # ==========================================================================

    async def create_relationship(
        self,
        from_label: str,
        from_id: Any,
        to_label: str,
        to_id: Any,
        rel_type: str,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """
        Create a directed relationship between two existing nodes.

        Args:
            from_label: Model of the start node
            from_id: Identity of the start node
            to_label: Model of the end node
            to_id: Identity of the end node
            rel_type: Relationship type
            properties: Relationship properties

        Returns:
            ``{"type", "properties", "source", "target"}``

        Raises:
            NotFoundError: If either node does not exist
        """
        statement = (
            f"MATCH (a:{quote_identifier(from_label)}) "
            f"WHERE a.{quote_identifier(self._primary_key(from_label))} = $from_id "
            f"MATCH (b:{quote_identifier(to_label)}) "
            f"WHERE b.{quote_identifier(self._primary_key(to_label))} = $to_id "
            f"CREATE (a)-[r:{quote_identifier(rel_type)}]->(b) SET r = $props "
            "RETURN properties(r) AS properties, properties(a) AS source, "
            "properties(b) AS target"
        )
        props = {}
        for name, value in (properties or {}).items():
            quote_identifier(name)
            if value is not None:
                props[name] = serialize_value(value) if isinstance(value, Mapping) else value

        with self.guard("create_relationship", rel_type):
            rows = await self._run(
                statement, {"from_id": from_id, "to_id": to_id, "props": props}
            )
        if not rows:
            raise NotFoundError(
                f"Cannot relate {from_label}({from_id}) to {to_label}({to_id}): node not found",
                resource_type="node",
                resource_id=f"{from_id}->{to_id}",
            )
        return self._to_relationship(rel_type, rows[0], from_label, to_label)

    async def find_relationships(
        self,
        rel_type: str,
        predicate: Optional[Predicate] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """
        Find relationships of one type whose properties match ``predicate``.
        """
        compiled = CypherQueryCompiler(variable="r").compile(predicate)
        params = dict(compiled.bindings)
        statement = (
            f"MATCH (a)-[r:{quote_identifier(rel_type)}]->(b) WHERE {compiled.fragment} "
            "RETURN properties(r) AS properties, properties(a) AS source, "
            "properties(b) AS target"
        )
        bound = limit if limit is not None else self.default_limit
        if bound is not None:
            statement += " LIMIT $limit"
            params["limit"] = int(bound)
        with self.guard("find_relationships", rel_type):
            rows = await self._run(statement, params)
        return [self._to_relationship(rel_type, row) for row in rows]

    def _to_relationship(
        self,
        rel_type: str,
        row: Mapping[str, Any],
        from_label: Optional[str] = None,
        to_label: Optional[str] = None,
    ) -> Record:
        return {
            "type": rel_type,
            "properties": to_native(dict(row["properties"])),
            "source": self._to_record(from_label, row["source"]),
            "target": self._to_record(to_label, row["target"]),
        }

    # ==========================================================================
    # MODEL MANAGEMENT
    # ==========================================================================

    @staticmethod
    def _constraint_name(model: str, field: str) -> str:
        return f"{model}_{field}_unique"

    @staticmethod
    def _index_name(model: str, field: str) -> str:
        return f"{model}_{field}_index"

    async def create_model(
        self,
        model: str,
        schema: Union[ModelSchema, Mapping[str, Any], None] = None,
    ) -> ModelSchema:
        """
        Register a schema and create unique constraints and indexes.

        The primary key always gets a unique constraint. Required
        fields are enforced by the adapter since property existence
        constraints need an enterprise server.
        """
        label = quote_identifier(model)
        self._require_driver()
        resolved, created = self.register_schema(self._schemas, model, schema)
        if not created:
            return resolved

        statements = []
        for name in dict.fromkeys([resolved.primary_key] + resolved.unique_fields):
            statements.append(
                f"CREATE CONSTRAINT {quote_identifier(self._constraint_name(model, name))} "
                f"IF NOT EXISTS FOR (n:{label}) REQUIRE n.{quote_identifier(name)} IS UNIQUE"
            )
        for name in resolved.indexed_fields:
            statements.append(
                f"CREATE INDEX {quote_identifier(self._index_name(model, name))} "
                f"IF NOT EXISTS FOR (n:{label}) ON (n.{quote_identifier(name)})"
            )

        try:
            with self.guard("create_model", model):
                for statement in statements:
                    await self._run(statement, autocommit=True)
        except PolystoreError:
            self._schemas.pop(model, None)
            raise

        logger.info(f"Neo4j label '{model}' ready")
        return resolved

    async def drop_model(self, model: str) -> None:
        """Delete every node of the label and drop its constraints and indexes."""
        label = quote_identifier(model)
        self._require_driver()
        schema = self._schemas.get(model)

        statements = [f"MATCH (n:{label}) DETACH DELETE n"]
        if schema is not None:
            for name in dict.fromkeys([schema.primary_key] + schema.unique_fields):
                statements.append(
                    f"DROP CONSTRAINT {quote_identifier(self._constraint_name(model, name))} IF EXISTS"
                )
            for name in schema.indexed_fields:
                statements.append(
                    f"DROP INDEX {quote_identifier(self._index_name(model, name))} IF EXISTS"
                )

        with self.guard("drop_model", model):
            for statement in statements:
                await self._run(statement, autocommit=True)
        self._schemas.pop(model, None)
        logger.info(f"Neo4j label '{model}' dropped")
