# ==============================================================================
# REDIS ADAPTER - redis-py Async Client Implementation
# ==============================================================================
# Key-value adapter; records are JSON strings under "<model>:<key>"
# Predicates are evaluated in-process over scanned records
# Transactions queue writes on a MULTI/EXEC pipeline
# ==============================================================================

from __future__ import annotations

import copy
import inspect
import logging
from datetime import timedelta
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

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline, PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from polystore.core.constants import RecordConstants
from polystore.core.exceptions import (
    ConnectionError,
    DatabaseError,
    DuplicateKeyError,
    NotFoundError,
    PolystoreError,
    TransactionError,
    UnsupportedOperationError,
    ValidationError,
)
from polystore.core.settings import settings
from polystore.database.adapters.base_adapter import (
    AdapterCapabilities,
    BaseDatabaseAdapter,
    Record,
)
from polystore.database.batching import SubmitResult, submit_with_retry
from polystore.database.results import (
    BulkItemError,
    BulkWriteResult,
    DeleteResult,
    UpdateResult,
)
from polystore.database.schema import ModelSchema
from polystore.database.unit_of_work import UnitOfWork
from polystore.query.matcher import MatcherCompiler, sort_records
from polystore.query.operators import (
    Predicate,
    QueryOperator,
    SortSpec,
    UpdateExpression,
    is_operator_map,
)
from polystore.utils.helpers import chunked, deserialize_value, generate_uuid, serialize_value

logger = logging.getLogger(__name__)

R = TypeVar("R")

Expiry = Union[int, float, timedelta, None]


class RedisAdapter(BaseDatabaseAdapter):
    """
    Redis key-value adapter using the redis-py asyncio client.

    Key Patterns:
        - {model}:{id}  → JSON-encoded record or scalar value
        - {model}:{key} → hash, list, set or sorted set of JSON-encoded members

    Scalar values are exposed to the generic API as
    ``{"id": key, "value": value}`` records. Reads through ``get``
    return the stored value itself.

    Features:
        - Connection pooling
        - TTL per key (seconds, fractional seconds or timedelta)
        - ``nx``/``xx`` conditional writes
        - Pipelined ``bulk_create`` with re-submission of unprocessed items
        - ``WATCH``-guarded read-modify-write updates
        - Read-through ``cache`` helper
        - Hash, list, set and sorted-set helpers plus publish/subscribe
        - MULTI/EXEC transactions whose writes apply together on commit

    Config:
        host, port, db, password: Server location (or ``url``)
        max_connections: Pool size
        batch_size: Commands per pipeline in ``bulk_create``
        scan_count: ``COUNT`` hint for ``SCAN``

    Example:
        >>> adapter = RedisAdapter({"host": "localhost", "port": 6379})
        >>> await adapter.initialize()
        >>> await adapter.create("session", "abc", ttl=60)
        >>> await adapter.get("session", "abc")
        'abc'
    """

    backend_name = "redis"
    capabilities = AdapterCapabilities(
        transactions=True,
        aggregation=False,
        native_list_operations=False,
        regex_dialect="python",
    )
    connection_errors = (RedisConnectionError, RedisTimeoutError)

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        client: Optional[Redis] = None,
    ) -> None:
        """
        Args:
            config: Connection configuration
            client: Pre-built client (used instead of building one from config)
        """
        self.config: Dict[str, Any] = dict(config or {})
        self.batch_size = int(self.config.get("batch_size", settings.BATCH_SIZE))
        self.scan_count = int(self.config.get("scan_count", settings.REDIS_SCAN_COUNT))
        self.default_limit: Optional[int] = self.config.get("default_limit")
        self._compiler = MatcherCompiler(backend=self.backend_name)
        self._provided_client = client
        self._client: Optional[Redis] = None
        self._schemas: Dict[str, ModelSchema] = {}
        self._pipe: Optional[Pipeline] = None

    # ==========================================================================
    # LIFECYCLE METHODS
    # ==========================================================================

    def _build_client(self) -> Redis:
        options = {
            "max_connections": int(
                self.config.get("max_connections", self.config.get("pool_size", settings.DB_POOL_SIZE))
            ),
            "socket_timeout": float(self.config.get("socket_timeout", 5.0)),
            "socket_connect_timeout": float(self.config.get("socket_connect_timeout", 5.0)),
            "decode_responses": True,
        }
        if self.config.get("url"):
            return Redis.from_url(self.config["url"], **options)
        return Redis(
            host=self.config.get("host", "localhost"),
            port=int(self.config.get("port", 6379)),
            db=int(self.config.get("db", 0)),
            password=self.config.get("password"),
            **options,
        )

    async def initialize(self) -> None:
        """
        Build the client and verify connectivity with ``PING``.

        Raises:
            ConnectionError: If the server is unreachable
        """
        if self._client is not None:
            return

        client = self._provided_client or self._build_client()
        try:
            await client.ping()
        except Exception as e:
            await client.aclose()
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(
                f"Redis connection failed: {e}",
                operation="initialize",
                details={"backend": self.backend_name},
            ) from e

        self._client = client
        logger.info("Connected to Redis")

    async def close(self) -> None:
        """Close the client and its connection pool."""
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Disconnected from Redis")

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis answers ``PING``
        """
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def _ensure_connected(self) -> Redis:
        """Ensure client is connected and return it."""
        if self._client is None:
            raise ConnectionError(
                "Redis adapter not initialized. Call initialize() first.",
                details={"backend": self.backend_name},
            )
        return self._client

    def _bind(self, pipe: Pipeline) -> "RedisAdapter":
        bound = copy.copy(self)
        bound._pipe = pipe
        return bound

    def _queued(self, operation: str, conditional: bool = False) -> bool:
        """True when writes go to the open transaction's command queue."""
        if self._pipe is None:
            return False
        if conditional:
            raise UnsupportedOperationError(
                operation,
                self.backend_name,
                message=f"redis {operation} with nx/xx reports its outcome only "
                        f"after EXEC; run it outside the transaction",
            )
        return True

    async def _write(self, command: str, model: Optional[str], *args: Any, **kwargs: Any) -> Any:
        """Send a write command, or queue it inside a transaction (returns None)."""
        with self.guard(command, model):
            if self._queued(command):
                getattr(self._pipe, command)(*args, **kwargs)
                return None
            return await getattr(self._ensure_connected(), command)(*args, **kwargs)

    # ==========================================================================
    # KEY & VALUE HELPERS
    # ==========================================================================

    @staticmethod
    def key_name(model: str, key: Any) -> str:
        """Full Redis key for a record key."""
        # Rejects names that are not plain identifiers
        ModelSchema.from_definition(model, None)
        return f"{model}{RecordConstants.KEY_SEPARATOR}{key}"

    @staticmethod
    def _expiry(ttl: Expiry) -> Dict[str, Any]:
        if ttl is None:
            return {}
        if isinstance(ttl, timedelta):
            return {"px": int(ttl.total_seconds() * 1000)}
        if isinstance(ttl, bool) or ttl <= 0:
            raise ValidationError(
                f"TTL must be a positive number of seconds, got {ttl!r}",
                errors={"ttl": "must be positive"},
            )
        if isinstance(ttl, float) and not ttl.is_integer():
            return {"px": int(ttl * 1000)}
        return {"ex": int(ttl)}

    def _prepare(self, model: str, data: Any) -> Tuple[str, Any, Record]:
        """
        Returns:
            ``(key, stored value, canonical record)``
        """
        if not isinstance(data, Mapping):
            if data is None or isinstance(data, (list, tuple, set)):
                raise ValidationError(
                    f"Cannot store {type(data).__name__} as a key in '{model}'",
                    errors={"record": "expected a mapping or a scalar"},
                )
            key = str(data)
            return key, data, {"id": key, "value": data}

        schema = self._schemas.get(model)
        primary_key = schema.primary_key if schema is not None else "id"
        record = dict(data)
        if primary_key != "id" and "id" in record:
            record.setdefault(primary_key, record.pop("id"))
        if schema is not None:
            record = schema.validate_record(record)
        if record.get(primary_key) is None:
            record[primary_key] = generate_uuid()
        record["id"] = record[primary_key]
        return str(record[primary_key]), record, record

    @staticmethod
    def _to_record(key: str, raw: Any) -> Record:
        value = deserialize_value(raw)
        if isinstance(value, dict):
            record = dict(value)
            record.setdefault("id", key)
            return record
        return {"id": key, "value": value}

    def _direct_key(self, model: str, predicate: Optional[Predicate]) -> Optional[str]:
        """Key addressed by an identity-equality predicate, if that is all it is."""
        if not predicate or len(predicate) != 1:
            return None
        schema = self._schemas.get(model)
        primary_key = schema.primary_key if schema is not None else "id"
        (field, value), = predicate.items()
        if field not in ("id", primary_key):
            return None
        if is_operator_map(value):
            if set(value) != {QueryOperator.EQ.value}:
                return None
            value = value[QueryOperator.EQ.value]
        if value is None or isinstance(value, (Mapping, list, tuple, set)):
            return None
        return str(value)

    async def _entries(
        self,
        model: str,
        predicate: Optional[Predicate],
    ) -> List[Tuple[str, Record]]:
        """Scan the model's key space and return ``(redis key, record)`` matches."""
        client = self._ensure_connected()
        match = self._compiler.compile(predicate, self._schemas.get(model)).fragment
        prefix = self.key_name(model, "")

        direct = self._direct_key(model, predicate)
        with self.guard("scan", model):
            if direct is not None:
                names = [self.key_name(model, direct)]
            else:
                names = list(dict.fromkeys([
                    name async for name in client.scan_iter(
                        match=f"{prefix}*", count=self.scan_count
                    )
                ]))
            entries: List[Tuple[str, Record]] = []
            for batch in chunked(names, self.batch_size):
                for name, raw in zip(batch, await client.mget(batch)):
                    if raw is None:
                        continue
                    record = self._to_record(name[len(prefix):], raw)
                    if match(record):
                        entries.append((name, record))
        return entries

    # ==========================================================================
    # KEY-VALUE OPERATIONS
    # ==========================================================================

    async def get(self, model: str, key: Any) -> Any:
        """
        Get the value stored under a key.

        Returns:
            Stored value (scalar or record), None if missing or expired
        """
        client = self._ensure_connected()
        with self.guard("get", model):
            raw = await client.get(self.key_name(model, key))
        return deserialize_value(raw)

    async def set(
        self,
        model: str,
        key: Any,
        value: Any,
        ttl: Expiry = None,
        nx: bool = False,
        xx: bool = False,
    ) -> bool:
        """
        Store a value under a key.

        Args:
            model: Key space
            key: Record key
            value: Any JSON-serializable value
            ttl: Time-to-live in seconds (fractions allowed) or timedelta
            nx: Only write if the key does not exist
            xx: Only write if the key already exists

        Returns:
            True if the value was written (or queued inside a transaction)
        """
        client = self._ensure_connected()
        if self._queued("set", conditional=nx or xx):
            self._pipe.set(self.key_name(model, key), serialize_value(value), **self._expiry(ttl))
            return True
        with self.guard("set", model):
            written = await client.set(
                self.key_name(model, key),
                serialize_value(value),
                nx=nx,
                xx=xx,
                **self._expiry(ttl),
            )
        return bool(written)

    async def cache(
        self,
        model: str,
        key: Any,
        loader: Callable[[], Any],
        ttl: Expiry = None,
    ) -> Any:
        """
        Read-through cache: return the stored value or load, store and return it.

        ``loader`` may be a plain callable or a coroutine function.
        ``None`` results are not cached.
        """
        cached = await self.get(model, key)
        if cached is not None:
            return cached

        value = loader()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            await self.set(model, key, value, ttl=ttl)
            logger.debug(f"[redis] cached {self.key_name(model, key)}")
        return value

    # ==========================================================================
    # CRUD OPERATIONS
    # ==========================================================================

    async def create(
        self,
        model: str,
        data: Any,
        ttl: Expiry = None,
        nx: bool = False,
        xx: bool = False,
        **options: Any,
    ) -> Union[Record, List[Record]]:
        """
        Store a record or a scalar.

        A mapping is stored under its identity (generated when absent);
        a scalar is stored under itself as key.

        Raises:
            DuplicateKeyError: ``nx`` and the key exists
            NotFoundError: ``xx`` and the key does not exist
        """
        if isinstance(data, list):
            return [
                await self.create(model, item, ttl=ttl, nx=nx, xx=xx, **options)
                for item in data
            ]

        client = self._ensure_connected()
        key, value, record = self._prepare(model, data)
        name = self.key_name(model, key)
        if self._queued("create", conditional=nx or xx):
            self._pipe.set(name, serialize_value(value), **self._expiry(ttl))
            return record
        with self.guard("create", model):
            written = await client.set(
                name, serialize_value(value), nx=nx, xx=xx, **self._expiry(ttl)
            )
        if not written:
            if nx:
                raise DuplicateKeyError(
                    f"Key '{name}' already exists",
                    model=model,
                    details={"key": key},
                )
            raise NotFoundError(
                f"Key '{name}' does not exist",
                resource_type=model,
                resource_id=key,
            )
        return record

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
        records = [record for _, record in await self._entries(model, predicate)]
        if sort:
            records = sort_records(records, sort)
        start = offset or 0
        bound = limit if limit is not None else self.default_limit
        end = None if bound is None else start + bound
        return [self.project(record, fields) for record in records[start:end]]

    async def update(
        self,
        model: str,
        predicate: Optional[Predicate],
        update: UpdateExpression,
        **options: Any,
    ) -> UpdateResult:
        """
        Read-modify-write every matching key under ``WATCH``.

        The remaining TTL of each key is kept. Inside a transaction the
        rewrites are queued and counted as they would apply.

        Raises:
            TransactionError: A key changed between read and write
        """
        client = self._ensure_connected()
        schema = self._schemas.get(model)
        match = self._compiler.compile(predicate, schema).fragment
        apply = self._compiler.compile_update(update, schema).fragment
        prefix = self.key_name(model, "")

        matched = modified = 0
        entries = await self._entries(model, predicate)
        if self._queued("update"):
            with self.guard("update", model):
                for name, _ in entries:
                    found, payload = self._revision(name[len(prefix):], await client.get(name), match, apply)
                    matched += found
                    if payload is not None:
                        self._pipe.set(name, payload, keepttl=True)
                        modified += 1
            return UpdateResult(matched_count=matched, modified_count=modified)

        for name, _ in entries:
            with self.guard("update", model):
                async with client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(name)
                        found, payload = self._revision(name[len(prefix):], await pipe.get(name), match, apply)
                        matched += found
                        if payload is None:
                            await pipe.unwatch()
                            continue
                        pipe.multi()
                        pipe.set(name, payload, keepttl=True)
                        await pipe.execute()
                        modified += 1
                    except WatchError as e:
                        raise TransactionError(
                            f"Key '{name}' was modified concurrently; update aborted",
                            details={"backend": self.backend_name, "key": name},
                        ) from e

        return UpdateResult(matched_count=matched, modified_count=modified)

    def _revision(
        self,
        key: str,
        raw: Any,
        match: Callable[[Record], bool],
        apply: Callable[[Record], Record],
    ) -> Tuple[bool, Optional[str]]:
        """``(matched, new payload)`` for one stored value; payload is None when unchanged."""
        if raw is None:
            return False, None
        record = self._to_record(key, raw)
        if not match(record):
            return False, None
        updated = apply(record)
        if updated == record:
            return True, None
        scalar = not isinstance(deserialize_value(raw), dict)
        return True, serialize_value(updated.get("value") if scalar else updated)

    async def delete(
        self,
        model: str,
        predicate: Optional[Predicate],
        **options: Any,
    ) -> DeleteResult:
        client = self._ensure_connected()
        names = [name for name, _ in await self._entries(model, predicate)]
        deleted = 0
        with self.guard("delete", model):
            for batch in chunked(names, self.batch_size):
                if self._queued("delete"):
                    self._pipe.unlink(*batch)
                    deleted += len(batch)
                else:
                    deleted += await client.unlink(*batch)
        return DeleteResult(deleted_count=deleted)

    async def count(self, model: str, predicate: Optional[Predicate] = None) -> int:
        return len(await self._entries(model, predicate))

    # ==========================================================================
    # BULK OPERATIONS
    # ==========================================================================

    async def bulk_create(
        self,
        model: str,
        records: Sequence[Any],
        ttl: Expiry = None,
        **options: Any,
    ) -> BulkWriteResult:
        """
        Write records with non-transactional pipelines of ``batch_size`` commands.

        Commands lost to connection errors are re-submitted with
        backoff; command errors are reported per item.
        """
        client = self._ensure_connected()
        expiry = self._expiry(ttl)
        result = BulkWriteResult()

        prepared: List[Tuple[int, str, str, Any]] = []
        for index, data in enumerate(records):
            try:
                key, value, record = self._prepare(model, data)
            except PolystoreError as e:
                result.errors.append(BulkItemError(index, e))
                continue
            prepared.append(
                (index, self.key_name(model, key), serialize_value(value), record["id"])
            )

        if self._queued("bulk_create"):
            for _, name, payload, record_id in prepared:
                self._pipe.set(name, payload, **expiry)
                result.inserted_ids.append(record_id)
            result.inserted_count = len(prepared)
            return result

        async def submit(batch: List[Tuple[int, str, str, Any]]) -> SubmitResult:
            outcome = SubmitResult()
            try:
                async with client.pipeline(transaction=False) as pipe:
                    for _, name, payload, _ in batch:
                        pipe.set(name, payload, **expiry)
                    replies = await pipe.execute(raise_on_error=False)
            except self.connection_errors as e:
                logger.warning(f"Redis pipeline of {len(batch)} command(s) lost: {e}")
                outcome.unprocessed.extend(range(len(batch)))
                return outcome

            for position, reply in enumerate(replies):
                if isinstance(reply, self.connection_errors):
                    outcome.unprocessed.append(position)
                elif isinstance(reply, Exception):
                    outcome.failed[position] = DatabaseError(
                        f"redis bulk_create failed: {reply}",
                        operation="bulk_create",
                        details={"backend": self.backend_name, "model": model},
                    )
            return outcome

        outcome = await submit_with_retry(
            prepared,
            submit,
            batch_size=self.batch_size,
            max_attempts=int(self.config.get("batch_max_attempts", settings.BATCH_MAX_ATTEMPTS)),
            backoff=float(self.config.get("batch_retry_backoff", settings.BATCH_RETRY_BACKOFF)),
            backend=self.backend_name,
        )

        processed = set(outcome.processed)
        for position, (index, _, _, record_id) in enumerate(prepared):
            if position in processed:
                result.inserted_count += 1
                result.inserted_ids.append(record_id)
        result.errors.extend(
            BulkItemError(prepared[error.index][0], error.error) for error in outcome.errors
        )
        result.errors.sort(key=lambda error: error.index)
        return result

    # ==========================================================================
    # NATIVE ESCAPE HATCHES
    # ==========================================================================

    async def aggregate(self, model: str, pipeline: Any) -> List[Record]:
        raise UnsupportedOperationError("aggregate", self.backend_name)

    async def query(
        self,
        raw: Any,
        params: Optional[Mapping[str, Any]] = None,
        **options: Any,
    ) -> Any:
        """
        Execute a raw Redis command.

        Args:
            raw: Command string (``"HGETALL user:1"``) or argument sequence
            params: Extra arguments appended in order

        Returns:
            The command reply; None when queued inside a transaction
        """
        client = self._ensure_connected()
        args = raw.split() if isinstance(raw, str) else list(raw)
        args.extend((params or {}).values())
        with self.guard("query"):
            if self._queued("query"):
                self._pipe.execute_command(*args)
                return None
            return await client.execute_command(*args)

    # ==========================================================================
    # DATA STRUCTURES
    # ==========================================================================

    async def hset(self, model: str, key: Any, mapping: Mapping[str, Any]) -> Optional[int]:
        """
        Set hash fields; values are JSON encoded like record values.

        Returns:
            Number of fields added
        """
        serialized = {field: serialize_value(value) for field, value in mapping.items()}
        return await self._write("hset", model, self.key_name(model, key), mapping=serialized)

    async def hget(self, model: str, key: Any, field: str) -> Any:
        client = self._ensure_connected()
        with self.guard("hget", model):
            raw = await client.hget(self.key_name(model, key), field)
        return deserialize_value(raw)

    async def hgetall(self, model: str, key: Any) -> Dict[str, Any]:
        client = self._ensure_connected()
        with self.guard("hgetall", model):
            raw = await client.hgetall(self.key_name(model, key))
        return {field: deserialize_value(value) for field, value in raw.items()}

    async def lpush(self, model: str, key: Any, *values: Any) -> Optional[int]:
        """Prepend values; returns the new list length."""
        return await self._write(
            "lpush", model, self.key_name(model, key), *map(serialize_value, values)
        )

    async def rpush(self, model: str, key: Any, *values: Any) -> Optional[int]:
        """Append values; returns the new list length."""
        return await self._write(
            "rpush", model, self.key_name(model, key), *map(serialize_value, values)
        )

    async def lrange(self, model: str, key: Any, start: int = 0, end: int = -1) -> List[Any]:
        """List items from ``start`` to ``end`` inclusive (negative counts from the end)."""
        client = self._ensure_connected()
        with self.guard("lrange", model):
            raw = await client.lrange(self.key_name(model, key), start, end)
        return [deserialize_value(item) for item in raw]

    async def sadd(self, model: str, key: Any, *members: Any) -> Optional[int]:
        """Add members to a set; returns the number newly added."""
        if not members:
            return 0
        return await self._write(
            "sadd", model, self.key_name(model, key), *map(serialize_value, members)
        )

    async def smembers(self, model: str, key: Any) -> List[Any]:
        client = self._ensure_connected()
        with self.guard("smembers", model):
            raw = await client.smembers(self.key_name(model, key))
        return [deserialize_value(member) for member in sorted(raw)]

    async def zadd(self, model: str, key: Any, scores: Mapping[Any, float]) -> Optional[int]:
        """Add members with scores to a sorted set; returns the number newly added."""
        serialized = {serialize_value(member): score for member, score in scores.items()}
        return await self._write("zadd", model, self.key_name(model, key), serialized)

    async def zrange(
        self,
        model: str,
        key: Any,
        start: int = 0,
        end: int = -1,
        withscores: bool = False,
    ) -> List[Any]:
        """
        Sorted-set members by ascending score.

        Returns:
            Members, or ``(member, score)`` tuples with ``withscores``
        """
        client = self._ensure_connected()
        with self.guard("zrange", model):
            raw = await client.zrange(self.key_name(model, key), start, end, withscores=withscores)
        if withscores:
            return [(deserialize_value(member), score) for member, score in raw]
        return [deserialize_value(member) for member in raw]

    async def publish(self, channel: str, message: Any) -> Optional[int]:
        """
        Publish a JSON-encoded message.

        Returns:
            Number of subscribers that received it
        """
        return await self._write("publish", None, channel, serialize_value(message))

    async def subscribe(self, *channels: str) -> PubSub:
        """
        Subscribe to channels.

        Returns:
            A subscribed ``PubSub``; decode message payloads with
            ``deserialize_value(message["data"])`` and ``aclose()`` it when done
        """
        client = self._ensure_connected()
        pubsub = client.pubsub()
        try:
            with self.guard("subscribe"):
                await pubsub.subscribe(*channels)
        except PolystoreError:
            await pubsub.aclose()
            raise
        logger.debug(f"[redis] subscribed to {', '.join(channels)}")
        return pubsub

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================

    async def transaction(
        self,
        callback: Callable[[Any], Awaitable[R]],
        **options: Any,
    ) -> R:
        """
        Run ``callback(handle)`` with its writes queued for one MULTI/EXEC.

        Writes through the handle are buffered on a transactional
        pipeline and sent together on commit; an exception discards
        them. Reads through the handle see committed data only, not
        the queued writes. Conditional (``nx``/``xx``) writes are
        refused inside the transaction.

        Raises:
            TransactionError: The callback failed or EXEC was rejected
        """
        if self._pipe is not None:
            return await callback(self)

        client = self._ensure_connected()
        pipe = client.pipeline(transaction=True)
        uow = UnitOfWork(
            backend=self.backend_name,
            handle=self._bind(pipe),
            commit=pipe.execute,
            rollback=pipe.reset,
            release=pipe.reset,
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
        """Register a schema used to validate records of a key space."""
        self.key_name(model, "")
        resolved, _ = self.register_schema(self._schemas, model, schema)
        return resolved

    async def drop_model(self, model: str) -> None:
        """Delete every key of the key space."""
        await self.delete(model, None)
        self._schemas.pop(model, None)
        logger.info(f"Redis key space '{model}' dropped")
