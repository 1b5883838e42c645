# ==============================================================================
# SQL ADAPTER - SQLAlchemy Async Core Implementation
# ==============================================================================
# Shared relational strategy for PostgreSQL-family databases and SQLite
# Tables are built from model schemas or reflected from the database
# ==============================================================================

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
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

import sqlalchemy as sa
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from polystore.core.exceptions import (
    ConfigError,
    ConnectionError,
    DatabaseError,
    DuplicateKeyError,
    NotFoundError,
    PolystoreError,
    QueryCompileError,
    TransactionError,
    ValidationError,
)
from polystore.core.settings import settings
from polystore.database.adapters.base_adapter import (
    AdapterCapabilities,
    BaseDatabaseAdapter,
    Record,
)
from polystore.database.results import BulkItemError, BulkWriteResult, DeleteResult, UpdateResult
from polystore.database.schema import ModelSchema
from polystore.database.unit_of_work import UnitOfWork
from polystore.query.operators import (
    Predicate,
    SortSpec,
    UpdateExpression,
    apply_update_actions,
    parse_sort,
)
from polystore.query.sql import SQLQueryCompiler, sa_type_for
from polystore.query.types import FieldType
from polystore.utils.helpers import chunked, generate_uuid

logger = logging.getLogger(__name__)

R = TypeVar("R")


def build_table(
    metadata: sa.MetaData,
    schema: ModelSchema,
    dialect: str,
) -> sa.Table:
    """
    Build a SQLAlchemy Table from a model schema.

    The primary key defaults to a 36-character string holding a UUID;
    a primary key declared as ``integer`` autoincrements. ``ref``
    fields get a foreign key when the referenced table is known to
    the same metadata.
    """
    primary_key = schema.primary_key
    pk_definition = schema.fields.get(primary_key)
    if pk_definition is not None:
        columns: List[sa.Column] = [
            sa.Column(
                primary_key,
                sa_type_for(pk_definition, dialect),
                primary_key=True,
                autoincrement=pk_definition.type is FieldType.INTEGER,
            )
        ]
    else:
        columns = [sa.Column(primary_key, sa.String(36), primary_key=True)]

    for name, definition in schema.fields.items():
        if name == primary_key:
            continue
        args: List[Any] = []
        if definition.ref and definition.ref in metadata.tables:
            referenced = metadata.tables[definition.ref]
            ref_key = next(iter(referenced.primary_key.columns)).name
            args.append(sa.ForeignKey(f"{definition.ref}.{ref_key}"))
        columns.append(
            sa.Column(
                name,
                sa_type_for(definition, dialect),
                *args,
                nullable=not definition.required,
                unique=definition.unique or None,
                index=(definition.index and not definition.unique) or None,
            )
        )
    return sa.Table(schema.name, metadata, *columns)


class ConnectionGate:
    """
    Serializes work on a pool that hands out one shared DBAPI connection.

    A transaction holds the gate until it ends. Ambient work from other
    tasks waits for it. Ambient work from the task holding the gate
    would commit or reset the open transaction on the shared
    connection, so it raises ``TransactionError`` instead.

    A disabled gate admits everything immediately.
    """

    def __init__(self, backend: str, enabled: bool = False) -> None:
        self.backend = backend
        self.enabled = enabled
        self._lock = asyncio.Lock()
        self._owner: Optional["asyncio.Task[Any]"] = None

    @asynccontextmanager
    async def hold(self, transaction: bool = False) -> AsyncIterator[None]:
        if not self.enabled:
            yield
            return
        if self._owner is not None and self._owner is asyncio.current_task():
            raise TransactionError(
                f"{self.backend}: ambient operation inside an open transaction "
                "on a shared connection; use the transaction handle",
                details={"backend": self.backend},
            )
        async with self._lock:
            if transaction:
                self._owner = asyncio.current_task()
            try:
                yield
            finally:
                if transaction:
                    self._owner = None


class SQLAdapter(BaseDatabaseAdapter):
    """
    Relational adapter using SQLAlchemy async Core.

    Subclasses supply the connection URL and engine options; query
    and update compilation, DDL, bulk writes and transactions are
    shared.

    Features:
        - Tables from ``create_model`` schemas, or reflected on first use
        - Per-item outcome reporting for ``bulk_create`` with a batched
          fast path
        - ``for_update=True`` row locking on ``find_many`` in transactions
        - Best-effort list updates applied by read-modify-write

    Config:
        url: Full SQLAlchemy URL (overrides the per-dialect fields)
        pool_size, max_overflow, pool_timeout, pool_recycle: Pool tuning
        batch_size: Rows per bulk insert statement
        default_limit: Optional row bound for ``find_many`` without ``limit``
        best_effort_updates: Defer non-atomic list operators
        echo: Log SQL statements
    """

    backend_name = "sql"
    dialect = "postgresql"
    supports_savepoints = True
    shares_connection = False
    capabilities = AdapterCapabilities(
        exists_policy="null_check",
        regex_dialect="posix",
    )
    duplicate_errors = (IntegrityError,)
    connection_errors = (InterfaceError, DisconnectionError, OSError)

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.config: Dict[str, Any] = dict(config or {})
        self.batch_size = int(self.config.get("batch_size", settings.BATCH_SIZE))
        self.default_limit: Optional[int] = self.config.get("default_limit")
        self._compiler = SQLQueryCompiler(
            dialect=self.dialect,
            best_effort=bool(self.config.get("best_effort_updates", False)),
        )
        self._engine: Optional[AsyncEngine] = None
        self._conn: Optional[AsyncConnection] = None
        self._gate = ConnectionGate(self.backend_name, enabled=self.shares_connection)
        self._metadata = sa.MetaData()
        self._tables: Dict[str, sa.Table] = {}
        self._schemas: Dict[str, ModelSchema] = {}

    # ==========================================================================
    # CONNECTION CONFIGURATION
    # ==========================================================================

    def build_url(self) -> Union[str, URL]:
        """Connection URL; subclasses derive it from their config fields."""
        url = self.config.get("url")
        if not url:
            raise ConfigError(
                f"{self.backend_name} adapter requires a 'url'",
                missing_fields=["url"],
            )
        return url

    def engine_options(self) -> Dict[str, Any]:
        return {
            "pool_size": int(self.config.get("pool_size", settings.DB_POOL_SIZE)),
            "max_overflow": int(self.config.get("max_overflow", settings.DB_MAX_OVERFLOW)),
            "pool_timeout": int(self.config.get("pool_timeout", settings.DB_POOL_TIMEOUT)),
            "pool_recycle": int(self.config.get("pool_recycle", settings.DB_POOL_RECYCLE)),
            "pool_pre_ping": True,
        }

    def classify_error(self, error: BaseException) -> Type[PolystoreError]:
        if isinstance(error, IntegrityError):
            text = str(error.orig if error.orig is not None else error).lower()
            if "unique" in text or "duplicate" in text:
                return DuplicateKeyError
            return DatabaseError
        return super().classify_error(error)

    # ==========================================================================
    # LIFECYCLE METHODS
    # ==========================================================================

    async def initialize(self) -> None:
        """
        Create the async engine and verify connectivity.

        Raises:
            ConnectionError: If the database is unreachable
        """
        if self._engine is not None:
            return

        engine: Optional[AsyncEngine] = None
        try:
            engine = create_async_engine(
                self.build_url(),
                echo=bool(self.config.get("echo", settings.DEBUG)),
                **self.engine_options(),
            )
            async with engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
        except ConfigError:
            raise
        except Exception as e:
            logger.error(f"Failed to connect to {self.backend_name}: {e}")
            if engine is not None:
                await engine.dispose()
            raise ConnectionError(
                f"{self.backend_name} connection failed: {e}",
                operation="initialize",
                details={"backend": self.backend_name},
            ) from e

        self._engine = engine
        logger.info(f"{self.backend_name} adapter connected successfully")

    async def close(self) -> None:
        """Dispose the engine and its pool."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        logger.info(f"{self.backend_name} adapter disconnected")

    async def health_check(self) -> bool:
        """
        Verify database connectivity.

        Returns:
            True if connection is healthy
        """
        if self._engine is None:
            return False
        try:
            async with self._gate.hold():
                async with self._engine.connect() as conn:
                    await conn.execute(sa.text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"{self.backend_name} health check failed: {e}")
            return False

    # ==========================================================================
    # CONNECTION SCOPES
    # ==========================================================================

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise ConnectionError(
                f"{self.backend_name} adapter not initialized. Call initialize() first.",
                details={"backend": self.backend_name},
            )
        return self._engine

    @asynccontextmanager
    async def _connection(self, write: bool = False) -> AsyncIterator[AsyncConnection]:
        """Transaction-bound connection, or a fresh one (committing when ``write``)."""
        if self._conn is not None:
            yield self._conn
            return
        engine = self._require_engine()
        async with self._gate.hold():
            if write:
                async with engine.begin() as conn:
                    yield conn
            else:
                async with engine.connect() as conn:
                    yield conn

    @asynccontextmanager
    async def _atomic(self) -> AsyncIterator[AsyncConnection]:
        """Scope whose failure leaves surrounding work intact."""
        if self._conn is None:
            engine = self._require_engine()
            async with self._gate.hold():
                async with engine.begin() as conn:
                    yield conn
        elif self.supports_savepoints:
            async with self._conn.begin_nested():
                yield self._conn
        else:
            yield self._conn

    def _bind(self, conn: AsyncConnection) -> "SQLAdapter":
        bound = copy.copy(self)
        bound._conn = conn
        return bound

    # ==========================================================================
    # TABLE RESOLUTION
    # ==========================================================================

    async def _get_table(self, model: str) -> sa.Table:
        """
        Resolve a model's table, reflecting it on first use.

        Raises:
            NotFoundError: If the table does not exist
        """
        table = self._tables.get(model)
        if table is not None:
            return table
        # Rejects names that are not plain identifiers
        ModelSchema.from_definition(model, None)

        def reflect(sync_conn: Any) -> Optional[sa.Table]:
            if not sa.inspect(sync_conn).has_table(model):
                return None
            return sa.Table(model, self._metadata, autoload_with=sync_conn)

        with self.guard("reflect", model):
            async with self._connection() as conn:
                table = await conn.run_sync(reflect)
        if table is None:
            raise NotFoundError(
                f"Model '{model}' does not exist",
                resource_type="model",
                resource_id=model,
            )
        self._tables[model] = table
        return table

    def _primary_key(self, model: str, table: sa.Table) -> str:
        schema = self._schemas.get(model)
        if schema is not None:
            return schema.primary_key
        keys = list(table.primary_key.columns)
        return keys[0].name if keys else "id"

    @staticmethod
    def _column(table: sa.Table, name: str, primary_key: str) -> sa.Column:
        if name == "id":
            name = primary_key
        if name not in table.c:
            raise QueryCompileError(
                f"Unknown field '{name}' for model '{table.name}'",
                details={"field": name, "model": table.name},
            )
        return table.c[name]

    @staticmethod
    def _to_record(row: Mapping[str, Any], primary_key: str) -> Record:
        record = dict(row)
        if primary_key != "id" and primary_key in record:
            record["id"] = record[primary_key]
        return record

    def _prepare(
        self,
        model: str,
        table: sa.Table,
        data: Any,
    ) -> Record:
        if not isinstance(data, Mapping):
            raise ValidationError(
                f"Records for '{model}' must be mappings, got {type(data).__name__}",
                errors={"record": "not a mapping"},
            )
        schema = self._schemas.get(model)
        primary_key = self._primary_key(model, table)
        record = dict(data)
        if primary_key != "id" and "id" in record:
            record.setdefault(primary_key, record.pop("id"))
        if schema is not None:
            record = schema.validate_record(record)

        unknown = [key for key in record if key not in table.c]
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for '{model}': {', '.join(unknown)}",
                errors={key: "unknown field" for key in unknown},
            )

        if record.get(primary_key) is None:
            pk_column = table.c[primary_key]
            if isinstance(pk_column.type, sa.Integer):
                record.pop(primary_key, None)
            else:
                record[primary_key] = generate_uuid()
        return record

    async def _insert(
        self,
        conn: AsyncConnection,
        table: sa.Table,
        record: Record,
        primary_key: str,
    ) -> Record:
        result = await conn.execute(table.insert().values(record))
        if record.get(primary_key) is None:
            record = {**record, primary_key: result.inserted_primary_key[0]}
        return self._to_record({c.name: record.get(c.name) for c in table.c}, primary_key)

    # ==========================================================================
    # CRUD OPERATIONS
    # ==========================================================================

    async def create(
        self,
        model: str,
        data: Union[Mapping[str, Any], List[Mapping[str, Any]]],
        **options: Any,
    ) -> Union[Record, List[Record]]:
        """
        Insert one record, or a list of records in one transaction.
        """
        table = await self._get_table(model)
        primary_key = self._primary_key(model, table)
        many = isinstance(data, list)
        records = [self._prepare(model, table, item) for item in (data if many else [data])]

        with self.guard("create", model):
            async with self._connection(write=True) as conn:
                created = [
                    await self._insert(conn, table, record, primary_key)
                    for record in records
                ]
        return created if many else created[0]

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
        for_update: bool = False,
        **options: Any,
    ) -> List[Record]:
        """
        Select matching rows.

        Args:
            for_update: Lock selected rows (only meaningful in a transaction)
        """
        table = await self._get_table(model)
        primary_key = self._primary_key(model, table)
        compiled = self._compiler.compile(predicate, self._schemas.get(model))

        if fields:
            names = [primary_key] + [f for f in fields if f not in ("id", primary_key)]
            columns = [self._column(table, name, primary_key) for name in names]
        else:
            columns = list(table.c)

        statement = sa.select(*columns).where(compiled.fragment)
        for name, direction in parse_sort(sort):
            column = self._column(table, name, primary_key)
            statement = statement.order_by(column.desc() if direction == -1 else column.asc())
        statement = statement.limit(limit if limit is not None else self.default_limit)
        if offset:
            statement = statement.offset(offset)
        if for_update:
            statement = statement.with_for_update()

        with self.guard("find_many", model):
            async with self._connection() as conn:
                rows = (await conn.execute(statement)).mappings().all()
        return [self._to_record(row, primary_key) for row in rows]

    async def update(
        self,
        model: str,
        predicate: Optional[Predicate],
        update: UpdateExpression,
        **options: Any,
    ) -> UpdateResult:
        """
        Update matching rows.

        Row counts report matched rows; ``modified_count`` equals
        ``matched_count``.
        """
        table = await self._get_table(model)
        schema = self._schemas.get(model)
        compiled = self._compiler.compile(predicate, schema)
        compiled_update = self._compiler.compile_update(update, schema)

        with self.guard("update", model):
            async with self._connection(write=True) as conn:
                if compiled_update.deferred:
                    matched = await self._read_modify_write(
                        conn, model, table, compiled.fragment, compiled_update
                    )
                else:
                    result = await conn.execute(
                        sa.update(table)
                        .where(compiled.fragment)
                        .values(compiled_update.fragment)
                    )
                    matched = result.rowcount
        return UpdateResult(matched_count=matched, modified_count=matched)

    async def _read_modify_write(
        self,
        conn: AsyncConnection,
        model: str,
        table: sa.Table,
        where: Any,
        compiled_update: Any,
    ) -> int:
        primary_key = self._primary_key(model, table)
        deferred = compiled_update.deferred
        columns = [table.c[primary_key]] + [
            self._column(table, action.field, primary_key) for action in deferred
        ]
        statement = sa.select(*columns).where(where)
        if self.dialect == "postgresql":
            statement = statement.with_for_update()

        rows = (await conn.execute(statement)).mappings().all()
        for row in rows:
            updated = apply_update_actions(row, deferred)
            values = {action.field: updated.get(action.field) for action in deferred}
            values.update(compiled_update.fragment)
            await conn.execute(
                sa.update(table)
                .where(table.c[primary_key] == row[primary_key])
                .values(values)
            )
        return len(rows)

    async def delete(
        self,
        model: str,
        predicate: Optional[Predicate],
        **options: Any,
    ) -> DeleteResult:
        table = await self._get_table(model)
        compiled = self._compiler.compile(predicate, self._schemas.get(model))
        with self.guard("delete", model):
            async with self._connection(write=True) as conn:
                result = await conn.execute(sa.delete(table).where(compiled.fragment))
                deleted = result.rowcount
        return DeleteResult(deleted_count=deleted)

    async def count(self, model: str, predicate: Optional[Predicate] = None) -> int:
        table = await self._get_table(model)
        compiled = self._compiler.compile(predicate, self._schemas.get(model))
        statement = sa.select(sa.func.count()).select_from(table).where(compiled.fragment)
        with self.guard("count", model):
            async with self._connection() as conn:
                return int((await conn.execute(statement)).scalar_one())

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
        Insert records in batches of ``batch_size``.

        A batch is written with one multi-row statement; if it fails,
        its rows are retried one by one so each failure is reported
        against its own index.
        """
        table = await self._get_table(model)
        primary_key = self._primary_key(model, table)
        result = BulkWriteResult()

        prepared: List[Tuple[int, Record]] = []
        for index, data in enumerate(records):
            try:
                prepared.append((index, self._prepare(model, table, data)))
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))

        batched = self._conn is None or self.supports_savepoints
        for batch in chunked(prepared, self.batch_size):
            rows = [row for _, row in batch]
            keys = {frozenset(row) for row in rows}
            if batched and len(keys) == 1 and all(primary_key in row for row in rows):
                try:
                    async with self._atomic() as conn:
                        await conn.execute(table.insert(), rows)
                except DBAPIError as e:
                    logger.warning(
                        f"{self.backend_name} batch insert into '{model}' failed, "
                        f"retrying {len(rows)} row(s) individually: {e}"
                    )
                else:
                    result.inserted_count += len(rows)
                    result.inserted_ids.extend(row[primary_key] for row in rows)
                    continue

            for index, row in batch:
                try:
                    with self.guard("bulk_create", model):
                        async with self._atomic() as conn:
                            created = await self._insert(conn, table, row, primary_key)
                except PolystoreError as e:
                    result.errors.append(BulkItemError(index, e))
                else:
                    result.inserted_count += 1
                    result.inserted_ids.append(created["id"])

        result.errors.sort(key=lambda error: error.index)
        return result

    # ==========================================================================
    # NATIVE ESCAPE HATCHES
    # ==========================================================================

    async def aggregate(self, model: str, pipeline: Any) -> List[Record]:
        """
        Run a caller-built ``Select`` (or SQL string) and return row mappings.
        """
        statement = sa.text(pipeline) if isinstance(pipeline, str) else pipeline
        with self.guard("aggregate", model):
            async with self._connection() as conn:
                rows = (await conn.execute(statement)).mappings().all()
        return [dict(row) for row in rows]

    async def query(
        self,
        raw: Any,
        params: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> Any:
        """
        Execute raw SQL with named parameters.

        Returns:
            Row mappings for statements returning rows, otherwise the
            affected row count
        """
        statement = sa.text(raw) if isinstance(raw, str) else raw
        with self.guard("query"):
            async with self._connection(write=True) as conn:
                result = await conn.execute(statement, dict(params or {}))
                if result.returns_rows:
                    return [dict(row) for row in result.mappings().all()]
                return result.rowcount

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================

    async def transaction(
        self,
        callback: Callable[[Any], Awaitable[R]],
        **options: Any,
    ) -> R:
        """
        Run ``callback(handle)`` on one connection inside BEGIN/COMMIT.

        A handle that is already transaction-bound joins its
        enclosing transaction.
        """
        if self._conn is not None:
            return await callback(self)

        engine = self._require_engine()
        async with self._gate.hold(transaction=True):
            with self.guard("transaction"):
                conn = await engine.connect()
                try:
                    trans = await conn.begin()
                except Exception:
                    await conn.close()
                    raise

            uow = UnitOfWork(
                backend=self.backend_name,
                handle=self._bind(conn),
                commit=trans.commit,
                rollback=trans.rollback,
                release=conn.close,
            )
            return await uow.run(callback)

    # ==========================================================================
    # MODEL MANAGEMENT
    # ==========================================================================

    async def create_model(
        self,
        model: str,
        schema: Union[ModelSchema, Mapping[str, Any], None] = None,
    ) -> ModelSchema:
        """
        Register a schema and ``CREATE TABLE IF NOT EXISTS`` with its indexes.

        Raises:
            ValidationError: If the model exists with a different schema
        """
        self._require_engine()
        resolved, created = self.register_schema(self._schemas, model, schema)
        if not created:
            return resolved

        stale = self._metadata.tables.get(model)
        if stale is not None:
            self._metadata.remove(stale)
        table = build_table(self._metadata, resolved, self.dialect)
        try:
            with self.guard("create_model", model):
                async with self._connection(write=True) as conn:
                    await conn.run_sync(table.create, checkfirst=True)
        except PolystoreError:
            self._schemas.pop(model, None)
            self._metadata.remove(table)
            raise

        self._tables[model] = table
        logger.info(f"{self.backend_name} model '{model}' ready")
        return resolved

    async def drop_model(self, model: str) -> None:
        """Drop the model's table; a missing table is a no-op."""
        self._require_engine()
        try:
            table = await self._get_table(model)
        except NotFoundError:
            self._schemas.pop(model, None)
            return

        with self.guard("drop_model", model):
            async with self._connection(write=True) as conn:
                await conn.run_sync(table.drop, checkfirst=True)
        self._metadata.remove(table)
        self._tables.pop(model, None)
        self._schemas.pop(model, None)
        logger.info(f"{self.backend_name} model '{model}' dropped")
