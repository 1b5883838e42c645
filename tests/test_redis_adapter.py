# ==============================================================================
# REDIS ADAPTER TESTS
# ==============================================================================
# Key-value contract run against fakeredis
# ==============================================================================

import asyncio
from datetime import timedelta

import pytest

from polystore.core.exceptions import (
    ConnectionError,
    DuplicateKeyError,
    NotFoundError,
    QueryCompileError,
    TransactionError,
    UnsupportedOperationError,
    ValidationError,
)
from polystore.database.adapters.redis_adapter import RedisAdapter
from polystore.utils.helpers import deserialize_value


# ==============================================================================
# KEY-VALUE OPERATIONS
# ==============================================================================

@pytest.mark.asyncio
class TestKeyValue:
    """Tests for scalar values, TTLs and conditional writes."""

    async def test_scalar_round_trip(self, redis_adapter):
        record = await redis_adapter.create("session", "abc", ttl=60)

        assert record == {"id": "abc", "value": "abc"}
        assert await redis_adapter.get("session", "abc") == "abc"

    async def test_ttl_expiry(self, redis_adapter):
        await redis_adapter.create("session", "short", ttl=0.1)
        assert await redis_adapter.get("session", "short") == "short"

        await asyncio.sleep(0.2)

        assert await redis_adapter.get("session", "short") is None

    async def test_ttl_forms(self, redis_adapter, redis_client):
        await redis_adapter.set("session", "a", 1, ttl=timedelta(minutes=1))
        await redis_adapter.set("session", "b", 1, ttl=30)

        assert 0 < await redis_client.pttl("session:a") <= 60_000
        assert 0 < await redis_client.ttl("session:b") <= 30

    @pytest.mark.parametrize("ttl", [0, -1, True])
    async def test_invalid_ttl(self, redis_adapter, ttl):
        with pytest.raises(ValidationError):
            await redis_adapter.create("session", "x", ttl=ttl)

    async def test_values_keep_their_type(self, redis_adapter):
        await redis_adapter.set("config", "limit", 42)
        await redis_adapter.set("config", "label", "42")

        assert await redis_adapter.get("config", "limit") == 42
        assert await redis_adapter.get("config", "label") == "42"

    async def test_nx_and_xx(self, redis_adapter):
        await redis_adapter.create("users", {"id": "1", "name": "Ada"}, nx=True)

        with pytest.raises(DuplicateKeyError):
            await redis_adapter.create("users", {"id": "1", "name": "Ada"}, nx=True)
        with pytest.raises(NotFoundError):
            await redis_adapter.create("users", {"id": "2", "name": "Alan"}, xx=True)

        assert await redis_adapter.set("users", "1", {"name": "x"}, nx=True) is False
        assert await redis_adapter.set("users", "1", {"name": "Countess"}, xx=True) is True
        assert await redis_adapter.get("users", "1") == {"name": "Countess"}

    async def test_cache_loads_once(self, redis_adapter):
        calls = []

        def loader():
            calls.append(1)
            return {"rate": 3}

        assert await redis_adapter.cache("rates", "eur", loader, ttl=10) == {"rate": 3}
        assert await redis_adapter.cache("rates", "eur", loader, ttl=10) == {"rate": 3}
        assert len(calls) == 1

    async def test_cache_async_loader_and_none(self, redis_adapter):
        async def missing():
            return None

        async def present():
            return "value"

        assert await redis_adapter.cache("rates", "x", missing) is None
        assert await redis_adapter.get("rates", "x") is None
        assert await redis_adapter.cache("rates", "y", present) == "value"

    async def test_invalid_model_name(self, redis_adapter):
        with pytest.raises(ValidationError):
            await redis_adapter.get("bad:model", "x")


# ==============================================================================
# GENERIC CONTRACT
# ==============================================================================

@pytest.mark.asyncio
class TestRecords:
    """Tests for records through the generic CRUD API."""

    async def test_create_then_find(self, redis_adapter):
        created = await redis_adapter.create("users", {"email": "ada@example.com"})

        assert created["id"]
        assert await redis_adapter.find_one("users", {"id": created["id"]}) == created

    async def test_schema_validation(self, redis_adapter, users_schema):
        await redis_adapter.create_model("users", users_schema)

        created = await redis_adapter.create("users", {"email": "ada@example.com", "age": "36"})
        assert (created["age"], created["active"]) == (36, True)

        with pytest.raises(ValidationError):
            await redis_adapter.create("users", {"name": "no email"})

    async def test_unstorable_values(self, redis_adapter):
        with pytest.raises(ValidationError):
            await redis_adapter.create("users", None)

    async def test_find_many_filters_sorts_and_pages(self, redis_adapter, sample_users):
        await redis_adapter.create("users", sample_users)
        await redis_adapter.create("other", {"name": "Ada", "age": 99})

        adults = await redis_adapter.find_many(
            "users", {"age": {"$gte": 30}}, sort={"age": -1}
        )
        page = await redis_adapter.find_many("users", sort="age", offset=1, limit=2)
        named = await redis_adapter.find_many("users", {"name": {"$regex": "^A"}}, fields=["name"])

        assert [u["name"] for u in adults] == ["Alan", "Ada"]
        assert [u["age"] for u in page] == [29, 36]
        assert sorted(u["name"] for u in named) == ["Ada", "Alan"]
        assert all(set(u) == {"id", "name"} for u in named)

    async def test_offset_without_limit_returns_the_rest(self, redis_adapter, sample_users):
        await redis_adapter.create("users", sample_users)

        rest = await redis_adapter.find_many("users", sort="age", offset=1)

        assert [u["age"] for u in rest] == [29, 36, 41]

    async def test_sort_over_mixed_value_types(self, redis_adapter):
        await redis_adapter.create("items", [
            {"id": "a", "rank": "high"},
            {"id": "b", "rank": 3},
            {"id": "c"},
        ])

        ascending = await redis_adapter.find_many("items", sort={"rank": 1})
        descending = await redis_adapter.find_many("items", sort={"rank": -1})

        assert [i["id"] for i in ascending] == ["c", "b", "a"]
        assert [i["id"] for i in descending] == ["a", "b", "c"]

    async def test_foreign_values_read_as_scalars(self, redis_adapter, redis_client):
        await redis_client.set("users:raw", "plain text")

        assert await redis_adapter.find_one("users", {"id": "raw"}) == {
            "id": "raw",
            "value": "plain text",
        }

    async def test_update_counts_matched_and_modified(self, redis_adapter, sample_users):
        await redis_adapter.create("users", sample_users)

        result = await redis_adapter.update("users", {"age": {"$lt": 40}}, {"age": {"$inc": 1}})
        unchanged = await redis_adapter.update("users", {"name": "Ada"}, {"name": "Ada"})

        assert (result.matched_count, result.modified_count) == (2, 2)
        assert (unchanged.matched_count, unchanged.modified_count) == (1, 0)
        assert await redis_adapter.count("users", {"age": 37}) == 1

    async def test_update_keeps_ttl(self, redis_adapter, redis_client):
        created = await redis_adapter.create("users", {"name": "Ada"}, ttl=60)

        await redis_adapter.update("users", {"id": created["id"]}, {"tags": {"$push": "x"}})

        assert await redis_client.ttl(f"users:{created['id']}") > 0
        assert (await redis_adapter.find_one("users"))["tags"] == ["x"]

    async def test_update_scalar(self, redis_adapter):
        await redis_adapter.set("counters", "hits", 1)

        await redis_adapter.update("counters", {"id": "hits"}, {"value": {"$inc": 2}})

        assert await redis_adapter.get("counters", "hits") == 3

    async def test_update_identity_rejected(self, redis_adapter):
        with pytest.raises(QueryCompileError):
            await redis_adapter.update("users", None, {"id": "x"})

    async def test_delete_then_count(self, redis_adapter, sample_users):
        await redis_adapter.create("users", sample_users)

        result = await redis_adapter.delete("users", {"name": None})

        assert result.deleted_count == 1
        assert await redis_adapter.count("users", {"name": None}) == 0
        assert await redis_adapter.count("users") == 3
        assert await redis_adapter.exists("users", {"name": "Grace"}) is True

    async def test_drop_model(self, redis_adapter, sample_users):
        await redis_adapter.create("users", sample_users)
        await redis_adapter.create("other", {"name": "kept"})

        await redis_adapter.drop_model("users")

        assert await redis_adapter.count("users") == 0
        assert await redis_adapter.count("other") == 1


# ==============================================================================
# BULK, ESCAPE HATCHES & LIFECYCLE
# ==============================================================================

@pytest.mark.asyncio
class TestBulkAndLifecycle:
    """Tests for bulk_create, raw commands and lifecycle."""

    async def test_bulk_create_across_batches(self, redis_adapter):
        redis_adapter.batch_size = 1

        result = await redis_adapter.bulk_create("users", [
            {"id": "1", "name": "Ada"},
            None,
            {"id": "2", "name": "Alan"},
        ], ttl=60)

        assert result.inserted_count == 2
        assert result.inserted_ids == ["1", "2"]
        assert [e.index for e in result.errors] == [1]
        assert await redis_adapter.count("users") == 2

    async def test_raw_query(self, redis_adapter):
        await redis_adapter.query("SET raw:1 hello")

        assert await redis_adapter.query("GET", {"key": "raw:1"}) == "hello"

    async def test_unsupported_operations(self, redis_adapter):
        with pytest.raises(UnsupportedOperationError):
            await redis_adapter.aggregate("users", [])

    async def test_lifecycle(self, redis_client):
        adapter = RedisAdapter({"host": "localhost", "port": 6379}, client=redis_client)

        assert await adapter.health_check() is False
        with pytest.raises(ConnectionError):
            await adapter.get("users", "1")

        await adapter.initialize()
        assert await adapter.health_check() is True
        assert adapter.capabilities.transactions is True

        await adapter.close()
        assert await adapter.health_check() is False


# ==============================================================================
# TRANSACTIONS
# ==============================================================================

@pytest.mark.asyncio
class TestTransactions:
    """Tests for MULTI/EXEC transactions through the handle."""

    async def test_commit_applies_queued_writes(self, redis_adapter):
        await redis_adapter.create("users", {"id": "1", "name": "Ada"})
        seen = []

        async def callback(tx):
            await tx.create("users", {"id": "2", "name": "Alan"})
            result = await tx.update("users", {"id": "1"}, {"name": "Countess"})
            await tx.rpush("queue", "jobs", "a", "b")
            seen.append(await tx.get("users", "2"))
            return result.modified_count

        assert await redis_adapter.transaction(callback) == 1
        assert seen == [None]
        assert await redis_adapter.get("users", "2") == {"id": "2", "name": "Alan"}
        assert (await redis_adapter.find_one("users", {"id": "1"}))["name"] == "Countess"
        assert await redis_adapter.lrange("queue", "jobs") == ["a", "b"]

    async def test_error_discards_queued_writes(self, redis_adapter):
        await redis_adapter.create("users", {"id": "1", "name": "Ada"})
        original = ValueError("abort")

        async def callback(tx):
            await tx.create("users", {"id": "2", "name": "Grace"})
            await tx.delete("users", {"id": "1"})
            await tx.sadd("tags", "post", "x")
            raise original

        with pytest.raises(TransactionError) as exc_info:
            await redis_adapter.transaction(callback)

        assert exc_info.value.__cause__ is original
        assert await redis_adapter.count("users") == 1
        assert await redis_adapter.smembers("tags", "post") == []

    async def test_bulk_create_and_delete_are_queued(self, redis_adapter, sample_users):
        await redis_adapter.create("users", {"id": "old", "name": "Old"})

        async def callback(tx):
            created = await tx.bulk_create("users", sample_users)
            deleted = await tx.delete("users", {"id": "old"})
            return created.inserted_count, deleted.deleted_count

        assert await redis_adapter.transaction(callback) == (len(sample_users), 1)
        assert await redis_adapter.count("users") == len(sample_users)

    async def test_conditional_writes_are_refused(self, redis_adapter):
        async def callback(tx):
            await tx.create("users", {"id": "1"}, nx=True)

        with pytest.raises(TransactionError) as exc_info:
            await redis_adapter.transaction(callback)

        assert isinstance(exc_info.value.__cause__, UnsupportedOperationError)
        assert await redis_adapter.count("users") == 0


# ==============================================================================
# DATA STRUCTURES & PUB/SUB
# ==============================================================================

@pytest.mark.asyncio
class TestDataStructures:
    """Tests for hash, list, set, sorted-set and pub/sub helpers."""

    async def test_hash(self, redis_adapter):
        assert await redis_adapter.hset("profiles", "ada", {"age": 36, "name": "Ada"}) == 2

        assert await redis_adapter.hget("profiles", "ada", "age") == 36
        assert await redis_adapter.hget("profiles", "ada", "missing") is None
        assert await redis_adapter.hgetall("profiles", "ada") == {"age": 36, "name": "Ada"}

    async def test_list(self, redis_adapter):
        await redis_adapter.rpush("queue", "jobs", "b", "c")

        assert await redis_adapter.lpush("queue", "jobs", "a") == 3
        assert await redis_adapter.lrange("queue", "jobs") == ["a", "b", "c"]
        assert await redis_adapter.lrange("queue", "jobs", 1, 1) == ["b"]

    async def test_set(self, redis_adapter):
        assert await redis_adapter.sadd("tags", "post", "x", "y", "x") == 2
        assert await redis_adapter.sadd("tags", "post") == 0
        assert sorted(await redis_adapter.smembers("tags", "post")) == ["x", "y"]

    async def test_sorted_set(self, redis_adapter):
        await redis_adapter.zadd("board", "weekly", {"ada": 3, "alan": 1, "grace": 2})

        assert await redis_adapter.zrange("board", "weekly") == ["alan", "grace", "ada"]
        assert await redis_adapter.zrange("board", "weekly", 0, 0, withscores=True) == [
            ("alan", 1.0)
        ]

    async def test_publish_reaches_subscriber(self, redis_adapter):
        pubsub = await redis_adapter.subscribe("events")
        try:
            assert await redis_adapter.publish("events", {"kind": "created"}) == 1

            message = None
            for _ in range(20):
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.05)
                if message is not None:
                    break

            assert message["channel"] == "events"
            assert deserialize_value(message["data"]) == {"kind": "created"}
        finally:
            await pubsub.aclose()
