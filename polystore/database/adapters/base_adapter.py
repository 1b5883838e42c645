# ==============================================================================
# BASE DATABASE ADAPTER - Abstract Interface
# ==============================================================================
# Defines the capability contract for all database adapters
# Ensures consistent API across document, relational, graph and key-value stores
# ==============================================================================

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from polystore.core.exceptions import (
    AdapterNotImplementedError,
    ConnectionError,
    DatabaseError,
    DuplicateKeyError,
    PolystoreError,
    ValidationError,
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
from polystore.query.operators import Predicate, SortSpec, UpdateExpression

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
R = TypeVar("R")


@dataclass(frozen=True)
class AdapterCapabilities:
    """
    Declared behavior of an adapter.

    Attributes:
        transactions: ``transaction()`` opens a native transaction
        aggregation: ``aggregate()`` runs a native pipeline
        atomic_multi_field_update: One update applies all fields atomically
        native_list_operations: ``$push/$pull/$prepend`` are atomic
        exists_policy: ``native`` presence test or ``null_check`` emulation
        regex_dialect: Regular-expression flavour of ``$regex``
        native_batch_size: Items per native batch call (None = unbounded)
    """
    transactions: bool = True
    aggregation: bool = True
    atomic_multi_field_update: bool = True
    native_list_operations: bool = True
    exists_policy: str = "native"
    regex_dialect: str = "pcre"
    native_batch_size: Optional[int] = None


class BaseDatabaseAdapter(ABC):
    """
    Abstract Base Class for Database Adapters.

    Provides a unified interface for CRUD, query and transaction
    operations across different database backends. Concrete adapters
    own one native driver each; this class holds no instance state,
    only stateless helpers shared by every strategy.

    Design Pattern:
        Implements the Adapter Pattern to provide a uniform interface
        for heterogeneous database systems.

    Class Attributes:
        backend_name: Name used in logs and error details
        capabilities: Declared behavior (see AdapterCapabilities)
        duplicate_errors: Driver exceptions meaning a unique violation
        connection_errors: Driver exceptions meaning the store is unreachable

    Example:
        >>> adapter = SQLiteAdapter({"database": ":memory:"})
        >>> await adapter.initialize()
        >>> user = await adapter.create("users", {"email": "test@example.com"})
        >>> await adapter.close()
    """

    backend_name: str = "database"
    capabilities: AdapterCapabilities = AdapterCapabilities()
    duplicate_errors: Tuple[Type[BaseException], ...] = ()
    connection_errors: Tuple[Type[BaseException], ...] = ()

    # ==========================================================================
    # LIFECYCLE METHODS
    # ==========================================================================

    @abstractmethod
    async def initialize(self) -> None:
        """
        Establish the native driver and connection pool.

        Must be called before any database operations. Calling it
        on an initialized adapter is a no-op.

        Raises:
            ConnectionError: If connection cannot be established
        """

    @abstractmethod
    async def close(self) -> None:
        """
        Release the native driver; a second call is a no-op.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """

    # ==========================================================================
    # CRUD OPERATIONS
    # ==========================================================================

    @abstractmethod
    async def create(
        self,
        model: str,
        data: Union[Mapping[str, Any], List[Mapping[str, Any]]],
        **options: Any,
    ) -> Union[Record, List[Record]]:
        """
        Create one record, or several for a list input.

        Args:
            model: Table/collection/label/key-space name
            data: Record data as dictionary (or list of them)

        Returns:
            Created record(s) with generated ``id``

        Raises:
            ValidationError: If data violates the model schema
            DuplicateKeyError: On unique constraint violation
            DatabaseError: If creation fails
        """

    @abstractmethod
    async def find_one(
        self,
        model: str,
        predicate: Optional[Predicate] = None,
        **options: Any,
    ) -> Optional[Record]:
        """
        Find a single record matching the predicate.

        Returns:
            First matching record, None if no match
        """

    @abstractmethod
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
        """
        Retrieve records with pagination, sorting and projection.

        Args:
            model: Table/collection name
            predicate: Filter mapping; None matches everything
            limit: Maximum number of records to return
            offset: Number of records to skip
            sort: ``{field: 1 | -1}`` or list of pairs; None = unspecified order
            fields: Projection; the identity is always returned

        Returns:
            List of matching records
        """

    @abstractmethod
    async def update(
        self,
        model: str,
        predicate: Optional[Predicate],
        update: UpdateExpression,
        **options: Any,
    ) -> UpdateResult:
        """
        Update every record matching the predicate.

        Returns:
            UpdateResult with matched and modified counts
        """

    @abstractmethod
    async def delete(
        self,
        model: str,
        predicate: Optional[Predicate],
        **options: Any,
    ) -> DeleteResult:
        """
        Delete every record matching the predicate.

        Returns:
            DeleteResult with the number of deleted records
        """

    # ==========================================================================
    # QUERY OPERATIONS
    # ==========================================================================

    @abstractmethod
    async def count(
        self,
        model: str,
        predicate: Optional[Predicate] = None,
    ) -> int:
        """
        Count records matching the predicate.
        """

    async def exists(self, model: str, predicate: Optional[Predicate] = None) -> bool:
        """
        Check if any record matches the predicate.

        Always equal to ``count(model, predicate) > 0``.
        """
        return await self.count(model, predicate) > 0

    async def aggregate(self, model: str, pipeline: Any) -> List[Record]:
        """
        Run a native aggregation pipeline.

        Raises:
            AdapterNotImplementedError: If the adapter does not implement it
            UnsupportedOperationError: If the backend has no aggregation
        """
        raise AdapterNotImplementedError("aggregate", self.backend_name)

    async def query(
        self,
        raw: Any,
        params: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> Any:
        """
        Execute a native query; results are backend-specific.
        """
        raise AdapterNotImplementedError("query", self.backend_name)

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
        Insert many records, reporting per-item outcomes.

        The default implementation creates records one at a time.
        Failed items are listed as BulkItemError; the rest stay committed.
        """
        result = BulkWriteResult()
        for index, data in enumerate(records):
            try:
                created = await self.create(model, data, **options)
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))
                continue
            result.inserted_count += 1
            result.inserted_ids.append(created["id"])
        return result

    async def bulk_update(
        self,
        model: str,
        operations: Sequence[Any],
        **options: Any,
    ) -> BulkUpdateResult:
        """
        Apply many predicate/update pairs, reporting per-operation outcomes.

        Operations may be BulkUpdateOperation instances, mappings with
        ``predicate`` and ``update`` keys, or ``(predicate, update)`` pairs.
        """
        result = BulkUpdateResult()
        for index, raw in enumerate(operations):
            try:
                operation = BulkUpdateOperation.coerce(raw)
                outcome = await self.update(
                    model, operation.predicate, operation.update, **options
                )
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))
                continue
            result.matched_count += outcome.matched_count
            result.modified_count += outcome.modified_count
        return result

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================

    @abstractmethod
    async def transaction(
        self,
        callback: Callable[[Any], Awaitable[R]],
        **options: Any,
    ) -> R:
        """
        Run ``callback(handle)`` inside one native transaction.

        ``handle`` is a transaction-bound view of this adapter; only
        operations issued through it take part in the transaction.

        Raises:
            TransactionError: The callback or commit failed; rolled back
            TransactionRollbackError: The rollback failed as well
        """

    # ==========================================================================
    # MODEL MANAGEMENT
    # ==========================================================================

    async def create_model(
        self,
        model: str,
        schema: Union[ModelSchema, Mapping[str, Any], None] = None,
    ) -> ModelSchema:
        """
        Declare a model and create its backend structures.
        """
        raise AdapterNotImplementedError("create_model", self.backend_name)

    async def drop_model(self, model: str) -> None:
        """
        Drop a model and all of its records.
        """
        raise AdapterNotImplementedError("drop_model", self.backend_name)

    # ==========================================================================
    # SHARED HELPERS
    # ==========================================================================

    @staticmethod
    def register_schema(
        registry: Dict[str, ModelSchema],
        model: str,
        schema: Union[ModelSchema, Mapping[str, Any], None],
    ) -> Tuple[ModelSchema, bool]:
        """
        Record a model schema in an adapter's registry.

        Returns:
            ``(schema, created)``; ``created`` is False when an identical
            schema was already registered

        Raises:
            ValidationError: If a different schema is already registered
        """
        resolved = ModelSchema.from_definition(model, schema)
        if resolved.name != model:
            resolved = resolved.model_copy(update={"name": model})
        existing = registry.get(model)
        if existing is not None:
            if existing != resolved:
                raise ValidationError(
                    f"Model '{model}' already exists with a different schema",
                    errors={"schema": "models are immutable without a migration"},
                )
            return existing, False
        registry[model] = resolved
        return resolved, True

    @staticmethod
    def project(record: Record, fields: Optional[Sequence[str]]) -> Record:
        """Keep ``fields`` plus the identity."""
        if not fields:
            return record
        wanted = set(fields) | {"id"}
        return {k: v for k, v in record.items() if k in wanted}

    def classify_error(self, error: BaseException) -> Type[PolystoreError]:
        """Map a native driver error onto a taxonomy class."""
        if self.duplicate_errors and isinstance(error, self.duplicate_errors):
            return DuplicateKeyError
        if self.connection_errors and isinstance(error, self.connection_errors):
            return ConnectionError
        return DatabaseError

    @contextmanager
    def guard(self, operation: str, model: Optional[str] = None) -> Iterator[None]:
        """
        Translate native driver errors raised inside the block.

        Taxonomy errors pass through unchanged; everything else is
        re-raised as the mapped taxonomy error with the original
        chained as ``__cause__``.
        """
        try:
            yield
        except PolystoreError:
            raise
        except Exception as e:
            error_cls = self.classify_error(e)
            message = f"{self.backend_name} {operation} failed: {e}"
            logger.error(message)
            details: Dict[str, Any] = {"backend": self.backend_name}
            if error_cls is DuplicateKeyError:
                details["operation"] = operation
                raise DuplicateKeyError(message, model=model, details=details) from e
            if model:
                details["model"] = model
            raise error_cls(message, operation=operation, details=details) from e
