# ==============================================================================
# SQLITE ADAPTER TESTS
# ==============================================================================
# Full contract run against in-memory SQLite through aiosqlite
# ==============================================================================

import asyncio

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
from polystore.database.adapters.sqlite_adapter import SQLiteAdapter
from polystore.database.results import BulkUpdateOperation
from polystore.database.schema import ModelSchema


async def seed(adapter, users):
    return await adapter.create("users", users)


# ==============================================================================
# LIFECYCLE
# ==============================================================================

@pytest.mark.asyncio
class TestLifecycle:
    """Tests for initialize / close / health_check."""

    async def test_health_follows_lifecycle(self):
        adapter = SQLiteAdapter({"database": ":memory:"})
        assert await adapter.health_check() is False

        await adapter.initialize()
        await adapter.initialize()
        assert await adapter.health_check() is True

        await adapter.close()
        await adapter.close()
        assert await adapter.health_check() is False

    async def test_operations_before_initialize(self):
        adapter = SQLiteAdapter({"database": ":memory:"})

        with pytest.raises(ConnectionError):
            await adapter.find_many("users")

    async def test_build_url(self):
        assert SQLiteAdapter({"database": ":memory:"}).build_url() == "sqlite+aiosqlite://"
        assert SQLiteAdapter({"database": "app.db"}).build_url() == "sqlite+aiosqlite:///app.db"
        assert SQLiteAdapter({"url": "sqlite:///x.db"}).build_url() == "sqlite+aiosqlite:///x.db"


# ==============================================================================
# CRUD
# ==============================================================================

@pytest.mark.asyncio
class TestCrud:
    """Tests for create / find / update / delete / count."""

    async def test_create_then_find_returns_same_record(self, sqlite_adapter):
        created = await sqlite_adapter.create("users", {"email": "ada@example.com", "age": "36"})

        assert created["id"]
        assert created["age"] == 36
        assert created["active"] is True
        assert await sqlite_adapter.find_one("users", {"id": created["id"]}) == created

    async def test_create_list(self, sqlite_adapter, sample_users):
        created = await seed(sqlite_adapter, sample_users)

        assert len(created) == 4
        assert len({user["id"] for user in created}) == 4
        assert await sqlite_adapter.count("users") == 4

    async def test_create_validates_schema(self, sqlite_adapter):
        with pytest.raises(ValidationError) as exc_info:
            await sqlite_adapter.create("users", {"name": "no email", "age": "old"})

        assert set(exc_info.value.errors) == {"email", "age"}
        assert await sqlite_adapter.count("users") == 0

    async def test_create_rejects_unknown_columns(self, sqlite_adapter):
        with pytest.raises(ValidationError):
            await sqlite_adapter.create("users", {"email": "a@example.com", "nickname": "x"})

    async def test_duplicate_unique_field(self, sqlite_adapter):
        await sqlite_adapter.create("users", {"email": "ada@example.com"})

        with pytest.raises(DuplicateKeyError) as exc_info:
            await sqlite_adapter.create("users", {"email": "ada@example.com"})
        assert exc_info.value.__cause__ is not None

    async def test_find_one_without_match(self, sqlite_adapter):
        assert await sqlite_adapter.find_one("users", {"email": "nobody"}) is None

    async def test_operators(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        async def emails(predicate):
            users = await sqlite_adapter.find_many("users", predicate, sort={"email": 1})
            return [u["email"].split("@")[0] for u in users]

        assert await emails({"age": {"$gte": 36}}) == ["ada", "alan"]
        assert await emails({"age": {"$between": [30, 40]}}) == ["ada"]
        assert await emails({"name": {"$ne": "Ada"}}) == ["alan", "grace", "nobody"]
        assert await emails({"name": None}) == ["nobody"]
        assert await emails({"age": {"$exists": False}}) == ["nobody"]
        assert await emails({"name": {"$in": ["Ada", "Grace"]}}) == ["ada", "grace"]
        assert await emails({"name": {"$contains": "la"}}) == ["alan"]
        assert await emails({"email": {"$beginsWith": "gr"}}) == ["grace"]
        assert await emails({"name": {"$regex": "^A"}}) == ["ada", "alan"]
        assert await emails({"name": {"$regex": "(?i)RAC"}}) == ["grace"]

    async def test_sort_limit_offset(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)
        known = {"age": {"$exists": True}}

        oldest = await sqlite_adapter.find_many("users", known, sort={"age": -1}, limit=2)
        middle = await sqlite_adapter.find_many("users", known, sort=[("age", "asc")], offset=1, limit=1)

        assert [u["name"] for u in oldest] == ["Alan", "Ada"]
        assert [u["name"] for u in middle] == ["Ada"]

    async def test_projection_keeps_identity(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        users = await sqlite_adapter.find_many("users", {"name": "Ada"}, fields=["name"])

        assert list(users[0]) == ["id", "name"]

    async def test_unknown_sort_field(self, sqlite_adapter):
        with pytest.raises(QueryCompileError):
            await sqlite_adapter.find_many("users", sort="nickname")

    async def test_update_then_find(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        result = await sqlite_adapter.update(
            "users",
            {"email": "ada@example.com"},
            {"$set": {"name": "Countess"}, "age": {"$inc": 1}},
        )

        assert (result.matched_count, result.modified_count) == (1, 1)
        ada = await sqlite_adapter.find_one("users", {"email": "ada@example.com"})
        assert (ada["name"], ada["age"]) == ("Countess", 37)

    async def test_update_without_match(self, sqlite_adapter):
        result = await sqlite_adapter.update("users", {"email": "x"}, {"age": 1})
        assert result.matched_count == 0

    async def test_best_effort_list_update(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        result = await sqlite_adapter.update(
            "users", {"age": {"$exists": False}}, {"tags": {"$push": "new"}}
        )

        assert result.matched_count == 1
        nobody = await sqlite_adapter.find_one("users", {"email": "nobody@example.com"})
        assert nobody["tags"] == ["new"]

    async def test_list_update_without_best_effort(self, users_schema):
        adapter = SQLiteAdapter({"database": ":memory:"})
        await adapter.initialize()
        try:
            await adapter.create_model("users", users_schema)
            with pytest.raises(UnsupportedOperationError):
                await adapter.update("users", None, {"tags": {"$pull": "math"}})
        finally:
            await adapter.close()

    async def test_delete_then_count(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        result = await sqlite_adapter.delete("users", {"age": {"$lt": 40}})

        assert result.deleted_count == 2
        assert await sqlite_adapter.count("users", {"age": {"$lt": 40}}) == 0
        assert await sqlite_adapter.count("users") == 2

    async def test_exists_matches_count(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        for predicate in ({"name": "Ada"}, {"name": "Nobody"}, None):
            count = await sqlite_adapter.count("users", predicate)
            assert await sqlite_adapter.exists("users", predicate) is (count > 0)


# ==============================================================================
# BULK OPERATIONS
# ==============================================================================

@pytest.mark.asyncio
class TestBulk:
    """Tests for bulk_create and bulk_update."""

    async def test_bulk_create_across_batches(self, sqlite_adapter):
        sqlite_adapter.batch_size = 1

        result = await sqlite_adapter.bulk_create("users", [
            {"email": "a@example.com"},
            {"email": "b@example.com"},
        ])

        assert result.inserted_count == 2
        assert len(result.inserted_ids) == 2
        assert result.errors == []

    async def test_find_many_without_limit_returns_every_row(self, sqlite_adapter):
        await sqlite_adapter.bulk_create(
            "users", [{"email": f"user{i}@example.com", "age": i} for i in range(1005)]
        )

        everyone = await sqlite_adapter.find_many("users", {})
        tail = await sqlite_adapter.find_many("users", sort={"age": 1}, offset=1000)

        assert len(everyone) == await sqlite_adapter.count("users") == 1005
        assert [u["age"] for u in tail] == [1000, 1001, 1002, 1003, 1004]

    async def test_bulk_create_reports_failures_per_item(self, sqlite_adapter):
        result = await sqlite_adapter.bulk_create("users", [
            {"email": "a@example.com"},
            {"email": "a@example.com"},
            {"name": "missing email"},
            {"email": "b@example.com"},
        ])

        assert result.inserted_count == 2
        assert [e.index for e in result.errors] == [1, 2]
        assert isinstance(result.errors[0].error, DuplicateKeyError)
        assert isinstance(result.errors[1].error, ValidationError)
        assert await sqlite_adapter.count("users") == 2

    async def test_bulk_update(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        result = await sqlite_adapter.bulk_update("users", [
            ({"name": "Ada"}, {"age": 1}),
            {"predicate": {"name": "Alan"}, "update": {"$bogus": {"age": 1}}},
            BulkUpdateOperation({"age": {"$lt": 40}}, {"score": 9.5}),
            "garbage",
        ])

        assert result.matched_count == 3
        assert [e.index for e in result.errors] == [1, 3]


# ==============================================================================
# TRANSACTIONS
# ==============================================================================

@pytest.mark.asyncio
class TestTransactions:
    """Tests for transaction commit and rollback."""

    async def test_commit(self, sqlite_adapter):
        async def work(tx):
            await tx.create("users", {"email": "a@example.com"})
            await tx.update("users", {"email": "a@example.com"}, {"age": 3})
            return await tx.count("users")

        assert await sqlite_adapter.transaction(work) == 1
        assert (await sqlite_adapter.find_one("users"))["age"] == 3

    async def test_rollback_leaves_no_partial_writes(self, sqlite_adapter):
        await sqlite_adapter.create("users", {"email": "keep@example.com"})

        async def work(tx):
            await tx.create("users", {"email": "a@example.com"})
            await tx.delete("users", {"email": "keep@example.com"})
            raise RuntimeError("abort")

        with pytest.raises(TransactionError) as exc_info:
            await sqlite_adapter.transaction(work)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        users = await sqlite_adapter.find_many("users")
        assert [u["email"] for u in users] == ["keep@example.com"]

    async def test_nested_transaction_joins(self, sqlite_adapter):
        async def inner(tx):
            await tx.create("users", {"email": "inner@example.com"})

        async def outer(tx):
            await tx.transaction(inner)
            raise RuntimeError("abort")

        with pytest.raises(TransactionError):
            await sqlite_adapter.transaction(outer)
        assert await sqlite_adapter.count("users") == 0

    async def test_ambient_work_inside_transaction_is_refused(self, sqlite_adapter):
        async def work(tx):
            await tx.create("users", {"email": "in_tx@example.com"})
            await sqlite_adapter.create("users", {"email": "ambient@example.com"})

        with pytest.raises(TransactionError):
            await sqlite_adapter.transaction(work)

        assert await sqlite_adapter.find_one("users", {"email": "in_tx@example.com"}) is None
        assert await sqlite_adapter.count("users") == 0

    async def test_other_tasks_wait_for_open_transaction(self, sqlite_adapter):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def work(tx):
            await tx.create("users", {"email": "in_tx@example.com"})
            entered.set()
            await release.wait()
            raise RuntimeError("abort")

        transaction = asyncio.create_task(sqlite_adapter.transaction(work))
        await entered.wait()
        counting = asyncio.create_task(sqlite_adapter.count("users"))
        await asyncio.sleep(0.05)
        assert not counting.done()

        release.set()
        with pytest.raises(TransactionError):
            await transaction
        assert await counting == 0

    async def test_file_database_is_not_gated(self):
        assert SQLiteAdapter({"database": "app.db"}).shares_connection is False
        assert SQLiteAdapter({"database": ":memory:"}).shares_connection is True

    async def test_locked_read_inside_transaction(self, sqlite_adapter, sample_users):
        await sqlite_adapter.bulk_create("users", sample_users)

        async def work(tx):
            locked = await tx.find_many("users", {"age": {"$gte": 36}}, for_update=True)
            for user in locked:
                await tx.update("users", {"id": user["id"]}, {"$inc": {"age": 1}})
            return len(locked)

        assert await sqlite_adapter.transaction(work) == 2
        assert await sqlite_adapter.count("users", {"age": {"$in": [37, 42]}}) == 2


# ==============================================================================
# MODEL MANAGEMENT & ESCAPE HATCHES
# ==============================================================================

@pytest.mark.asyncio
class TestModels:
    """Tests for create_model, drop_model, aggregate and query."""

    async def test_missing_model(self, sqlite_adapter):
        with pytest.raises(NotFoundError):
            await sqlite_adapter.find_many("ghosts")

    async def test_invalid_model_name(self, sqlite_adapter):
        with pytest.raises(ValidationError):
            await sqlite_adapter.find_many("users; DROP TABLE users")

    async def test_create_model_is_idempotent(self, sqlite_adapter, users_schema):
        assert await sqlite_adapter.create_model("users", users_schema) == users_schema

        with pytest.raises(ValidationError):
            await sqlite_adapter.create_model("users", {"email": "string"})

    async def test_drop_model(self, sqlite_adapter):
        await sqlite_adapter.drop_model("users")

        with pytest.raises(NotFoundError):
            await sqlite_adapter.count("users")
        await sqlite_adapter.drop_model("users")

    async def test_integer_primary_key(self, sqlite_adapter):
        schema = ModelSchema.from_definition(
            "orders", {"order_id": "integer", "total": "number"}, primary_key="order_id"
        )
        await sqlite_adapter.create_model("orders", schema)

        first = await sqlite_adapter.create("orders", {"total": 3.5})
        second = await sqlite_adapter.create("orders", {"total": 4})

        assert (first["order_id"], first["id"]) == (1, 1)
        assert second["id"] == 2
        assert (await sqlite_adapter.find_one("orders", {"id": 2}))["total"] == 4

    async def test_aggregate_and_query(self, sqlite_adapter, sample_users):
        await seed(sqlite_adapter, sample_users)

        rows = await sqlite_adapter.aggregate(
            "users", "SELECT count(*) AS n FROM users WHERE age IS NOT NULL"
        )
        found = await sqlite_adapter.query(
            "SELECT name FROM users WHERE age > :age ORDER BY name", {"age": 35}
        )

        assert rows == [{"n": 3}]
        assert found == [{"name": "Ada"}, {"name": "Alan"}]
