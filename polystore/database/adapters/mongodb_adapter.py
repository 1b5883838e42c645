# ==============================================================================
# MONGODB ADAPTER - Motor Async Driver Implementation
# ==============================================================================
# Document-oriented database adapter with full async support
# Uses Motor for non-blocking MongoDB operations
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

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING, UpdateMany
from pymongo.errors import (
    BulkWriteError,
    CollectionInvalid,
    ConnectionFailure,
)
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError

from polystore.core.exceptions import (
    ConnectionError,
    DatabaseError,
    DuplicateKeyError,
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
    BulkUpdateOperation,
    BulkUpdateResult,
    BulkWriteResult,
    DeleteResult,
    UpdateResult,
)
from polystore.database.schema import ModelSchema
from polystore.database.unit_of_work import UnitOfWork
from polystore.query.mongo import MongoQueryCompiler, from_object_id, to_object_id
from polystore.query.operators import Predicate, SortSpec, UpdateExpression, parse_sort
from polystore.query.types import FieldType
from polystore.utils.helpers import chunked

logger = logging.getLogger(__name__)

R = TypeVar("R")

_DUPLICATE_KEY_CODE = 11000

_BSON_TYPES = {
    FieldType.STRING: "string",
    FieldType.TEXT: "string",
    FieldType.UUID: "string",
    FieldType.INTEGER: ["int", "long"],
    FieldType.NUMBER: ["int", "long", "double", "decimal"],
    FieldType.BOOLEAN: "bool",
    FieldType.DATE: "date",
    FieldType.JSON: ["object", "array"],
    FieldType.ARRAY: "array",
}


def json_schema_validator(schema: ModelSchema) -> Dict[str, Any]:
    """Build a ``$jsonSchema`` validator enforcing required fields and types."""
    properties = {}
    for name, definition in schema.fields.items():
        if name == schema.primary_key:
            continue
        bson_type = _BSON_TYPES[definition.type]
        if not definition.required:
            bson_type = (bson_type if isinstance(bson_type, list) else [bson_type]) + ["null"]
        properties[name] = {"bsonType": bson_type}

    document: Dict[str, Any] = {"bsonType": "object", "properties": properties}
    required = [n for n in schema.required_fields if n != schema.primary_key]
    if required:
        document["required"] = required
    return {"$jsonSchema": document}


class MongoDBAdapter(BaseDatabaseAdapter):
    """
    MongoDB database adapter using Motor async driver.

    Provides full async support for document-oriented operations
    with automatic ObjectId serialization and transaction support.

    Features:
        - Async MongoDB operations using Motor
        - Automatic ObjectId <-> string conversion on ``id``
        - Transaction support with session context
        - Aggregation pipeline support for complex queries
        - Unordered ``insert_many`` reporting per-item failures

    Config:
        uri: MongoDB connection URI
        database: Database name
        pool_size: maxPoolSize of the client
        batch_size: Documents per ``insert_many`` call

    Example:
        >>> adapter = MongoDBAdapter({"uri": "mongodb://localhost:27017", "database": "app"})
        >>> await adapter.initialize()
        >>> doc = await adapter.create("users", {"email": "test@example.com"})
        >>> print(doc["id"])  # String ID
    """

    backend_name = "mongodb"
    capabilities = AdapterCapabilities(
        regex_dialect="pcre",
        native_batch_size=100_000,
    )
    duplicate_errors = (MongoDuplicateKeyError,)
    connection_errors = (ConnectionFailure,)

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.config: Dict[str, Any] = dict(config or {})
        self.batch_size = int(self.config.get("batch_size", settings.BATCH_SIZE))
        self.default_limit: Optional[int] = self.config.get("default_limit")
        self._compiler = MongoQueryCompiler()
        self._client: Optional[AsyncIOMotorClient] = None
        self._database: Optional[AsyncIOMotorDatabase] = None
        self._session: Optional[AsyncIOMotorClientSession] = None
        self._schemas: Dict[str, ModelSchema] = {}

    # ==========================================================================
    # ID SERIALIZATION HELPERS
    # ==========================================================================

    @staticmethod
    def _serialize_id(document: Optional[Dict[str, Any]]) -> Optional[Record]:
        """
        Convert MongoDB ``_id`` into the canonical string ``id``.

        Args:
            document: MongoDB document with _id

        Returns:
            Document with ``id`` field
        """
        if document and "_id" in document:
            document["id"] = from_object_id(document.pop("_id"))
        return document

    def _to_document(self, model: str, data: Any) -> Dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError(
                f"Records for '{model}' must be mappings, got {type(data).__name__}",
                errors={"record": "not a mapping"},
            )
        schema = self._schemas.get(model)
        document = schema.validate_record(data) if schema is not None else dict(data)
        primary_key = schema.primary_key if schema is not None else "id"
        for key in {"id", primary_key}:
            if key in document:
                value = document.pop(key)
                if value is not None:
                    document["_id"] = to_object_id(value)
        return document

    # ==========================================================================
    # LIFECYCLE METHODS
    # ==========================================================================

    async def initialize(self) -> None:
        """
        Create the Motor client and verify connectivity with ``ping``.

        Raises:
            ConnectionError: If the server is unreachable
        """
        if self._client is not None:
            return

        client = AsyncIOMotorClient(
            self.config["uri"],
            maxPoolSize=int(self.config.get("pool_size", settings.DB_POOL_SIZE)),
            serverSelectionTimeoutMS=int(
                self.config.get("pool_timeout", settings.DB_POOL_TIMEOUT)
            ) * 1000,
        )
        try:
            await client.admin.command("ping")
        except Exception as e:
            client.close()
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise ConnectionError(
                f"MongoDB connection failed: {e}",
                operation="initialize",
                details={"backend": self.backend_name},
            ) from e

        self._client = client
        self._database = client[self.config["database"]]
        logger.info(f"Connected to MongoDB: {self.config['database']}")

    async def close(self) -> None:
        """Close MongoDB client connection."""
        if self._client is None:
            return
        self._client.close()
        self._client = None
        self._database = None
        logger.info("Disconnected from MongoDB")

    async def health_check(self) -> bool:
        """
        Verify MongoDB connectivity.

        Returns:
            True if connection is healthy
        """
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except Exception as e:
            logger.warning(f"MongoDB health check failed: {e}")
            return False

    def _collection(self, model: str) -> AsyncIOMotorCollection:
        if self._database is None:
            raise ConnectionError(
                "MongoDB adapter not initialized. Call initialize() first.",
                details={"backend": self.backend_name},
            )
        # Rejects names that are not plain identifiers
        ModelSchema.from_definition(model, None)
        return self._database[model]

    def _bind(self, session: AsyncIOMotorClientSession) -> "MongoDBAdapter":
        bound = copy.copy(self)
        bound._session = session
        return bound

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
        Insert one document, or a list of documents with ``insert_many``.
        """
        collection = self._collection(model)
        if isinstance(data, list):
            documents = [self._to_document(model, item) for item in data]
            with self.guard("create", model):
                if documents:
                    await collection.insert_many(documents, session=self._session)
            return [self._serialize_id(document) for document in documents]

        document = self._to_document(model, data)
        with self.guard("create", model):
            result = await collection.insert_one(document, session=self._session)
        return self._serialize_id({**document, "_id": result.inserted_id})

    async def find_one(
        self,
        model: str,
        predicate: Optional[Predicate] = None,
        **options: Any,
    ) -> Optional[Record]:
        collection = self._collection(model)
        schema = self._schemas.get(model)
        compiled = self._compiler.compile(predicate, schema)
        projection = self._projection(options.get("fields"))
        order = self._sort_order(options.get("sort"), schema)
        with self.guard("find_one", model):
            document = await collection.find_one(
                compiled.fragment, projection, sort=order or None, session=self._session
            )
        return self._serialize_id(document)

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
        collection = self._collection(model)
        schema = self._schemas.get(model)
        compiled = self._compiler.compile(predicate, schema)

        cursor = collection.find(
            compiled.fragment, self._projection(fields), session=self._session
        )
        order = self._sort_order(sort, schema)
        if order:
            cursor = cursor.sort(order)
        if offset:
            cursor = cursor.skip(offset)
        bound = limit if limit is not None else self.default_limit
        if bound is not None:
            cursor = cursor.limit(bound)

        with self.guard("find_many", model):
            documents = await cursor.to_list(length=bound)
        return [self._serialize_id(document) for document in documents]

    @staticmethod
    def _sort_order(sort: SortSpec, schema: Optional[ModelSchema]) -> List[Tuple[str, int]]:
        primary_key = schema.primary_key if schema is not None else "id"
        return [
            ("_id" if name in ("id", primary_key) else name,
             DESCENDING if direction == -1 else ASCENDING)
            for name, direction in parse_sort(sort)
        ]

    @staticmethod
    def _projection(fields: Optional[Sequence[str]]) -> Optional[Dict[str, int]]:
        if not fields:
            return None
        return {name: 1 for name in fields if name != "id"}

    async def update(
        self,
        model: str,
        predicate: Optional[Predicate],
        update: UpdateExpression,
        **options: Any,
    ) -> UpdateResult:
        collection = self._collection(model)
        schema = self._schemas.get(model)
        compiled = self._compiler.compile(predicate, schema)
        compiled_update = self._compiler.compile_update(update, schema)
        with self.guard("update", model):
            result = await collection.update_many(
                compiled.fragment, compiled_update.fragment, session=self._session
            )
        return UpdateResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
        )

    async def delete(
        self,
        model: str,
        predicate: Optional[Predicate],
        **options: Any,
    ) -> DeleteResult:
        collection = self._collection(model)
        compiled = self._compiler.compile(predicate, self._schemas.get(model))
        with self.guard("delete", model):
            result = await collection.delete_many(compiled.fragment, session=self._session)
        return DeleteResult(deleted_count=result.deleted_count)

    async def count(self, model: str, predicate: Optional[Predicate] = None) -> int:
        collection = self._collection(model)
        compiled = self._compiler.compile(predicate, self._schemas.get(model))
        with self.guard("count", model):
            return await collection.count_documents(compiled.fragment, session=self._session)

    # ==========================================================================
    # BULK OPERATIONS
    # ==========================================================================

    def _write_error(self, model: str, error: Mapping[str, Any]) -> PolystoreError:
        message = error.get("errmsg", "write failed")
        if error.get("code") == _DUPLICATE_KEY_CODE:
            return DuplicateKeyError(message, model=model)
        return DatabaseError(message, operation="bulk_write", details={"code": error.get("code")})

    async def bulk_create(
        self,
        model: str,
        records: Sequence[Mapping[str, Any]],
        **options: Any,
    ) -> BulkWriteResult:
        """
        Insert with unordered ``insert_many`` calls of ``batch_size`` documents.

        Documents rejected by the server are reported per index; the
        rest of each batch is still written.
        """
        collection = self._collection(model)
        result = BulkWriteResult()

        prepared: List[Tuple[int, Dict[str, Any]]] = []
        for index, data in enumerate(records):
            try:
                prepared.append((index, self._to_document(model, data)))
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))

        for batch in chunked(prepared, self.batch_size):
            documents = [document for _, document in batch]
            failed: Dict[int, PolystoreError] = {}
            try:
                with self.guard("bulk_create", model):
                    try:
                        await collection.insert_many(
                            documents, ordered=False, session=self._session
                        )
                    except BulkWriteError as e:
                        for error in e.details.get("writeErrors", []):
                            failed[error["index"]] = self._write_error(model, error)
            except PolystoreError as e:
                for position in range(len(batch)):
                    failed.setdefault(position, e)

            for position, (index, document) in enumerate(batch):
                if position in failed:
                    result.errors.append(BulkItemError(index, failed[position]))
                else:
                    result.inserted_count += 1
                    result.inserted_ids.append(from_object_id(document.get("_id")))

        result.errors.sort(key=lambda error: error.index)
        return result

    async def bulk_update(
        self,
        model: str,
        operations: Sequence[Any],
        **options: Any,
    ) -> BulkUpdateResult:
        """
        Apply all operations with one unordered ``bulk_write``.
        """
        collection = self._collection(model)
        schema = self._schemas.get(model)
        result = BulkUpdateResult()

        requests: List[UpdateMany] = []
        positions: List[int] = []
        for index, raw in enumerate(operations):
            try:
                operation = BulkUpdateOperation.coerce(raw)
                requests.append(
                    UpdateMany(
                        self._compiler.compile(operation.predicate, schema).fragment,
                        self._compiler.compile_update(operation.update, schema).fragment,
                    )
                )
                positions.append(index)
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))

        if requests:
            with self.guard("bulk_update", model):
                try:
                    outcome = await collection.bulk_write(
                        requests, ordered=False, session=self._session
                    )
                    result.matched_count += outcome.matched_count
                    result.modified_count += outcome.modified_count
                except BulkWriteError as e:
                    result.matched_count += e.details.get("nMatched", 0)
                    result.modified_count += e.details.get("nModified", 0)
                    for error in e.details.get("writeErrors", []):
                        result.errors.append(
                            BulkItemError(positions[error["index"]], self._write_error(model, error))
                        )

        result.errors.sort(key=lambda error: error.index)
        return result

    # ==========================================================================
    # NATIVE ESCAPE HATCHES
    # ==========================================================================

    async def aggregate(self, model: str, pipeline: Any) -> List[Record]:
        """
        Run an aggregation pipeline.

        Args:
            model: Collection name
            pipeline: List of aggregation stages

        Returns:
            Aggregation results with ``_id`` renamed to ``id``
        """
        collection = self._collection(model)
        with self.guard("aggregate", model):
            cursor = collection.aggregate(list(pipeline), session=self._session)
            documents = await cursor.to_list(length=None)
        return [self._serialize_id(document) for document in documents]

    async def query(
        self,
        raw: Any,
        params: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> Any:
        """
        Run a database command document, e.g. ``{"collStats": "users"}``.
        """
        if self._database is None:
            raise ConnectionError(
                "MongoDB adapter not initialized. Call initialize() first.",
                details={"backend": self.backend_name},
            )
        command = {**dict(raw), **dict(params or {})}
        with self.guard("query"):
            return await self._database.command(command, session=self._session)

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================

    async def transaction(
        self,
        callback: Callable[[Any], Awaitable[R]],
        **options: Any,
    ) -> R:
        """
        Run ``callback(handle)`` in a multi-document transaction.

        Requires a replica set or sharded cluster.
        """
        if self._session is not None:
            return await callback(self)
        if self._client is None:
            raise ConnectionError(
                "MongoDB adapter not initialized. Call initialize() first.",
                details={"backend": self.backend_name},
            )

        with self.guard("transaction"):
            session = await self._client.start_session()
            try:
                session.start_transaction()
            except Exception:
                await session.end_session()
                raise

        uow = UnitOfWork(
            backend=self.backend_name,
            handle=self._bind(session),
            commit=session.commit_transaction,
            rollback=session.abort_transaction,
            release=session.end_session,
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
        Create the collection with a ``$jsonSchema`` validator and indexes.
        """
        self._collection(model)
        resolved, created = self.register_schema(self._schemas, model, schema)
        if not created:
            return resolved

        validator = json_schema_validator(resolved)
        try:
            with self.guard("create_model", model):
                try:
                    await self._database.create_collection(model, validator=validator)
                except CollectionInvalid:
                    await self._database.command(
                        {"collMod": model, "validator": validator}
                    )
                collection = self._database[model]
                for name in resolved.unique_fields:
                    await collection.create_index([(name, ASCENDING)], unique=True)
                for name in resolved.indexed_fields:
                    await collection.create_index([(name, ASCENDING)])
        except PolystoreError:
            self._schemas.pop(model, None)
            raise

        logger.info(f"MongoDB collection '{model}' ready")
        return resolved

    async def drop_model(self, model: str) -> None:
        self._collection(model)
        with self.guard("drop_model", model):
            await self._database.drop_collection(model)
        self._schemas.pop(model, None)
        logger.info(f"MongoDB collection '{model}' dropped")
