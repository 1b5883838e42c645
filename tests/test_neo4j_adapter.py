# ==============================================================================
# NEO4J ADAPTER TESTS
# ==============================================================================
# A recording fake stands in for the async Bolt driver
# ==============================================================================

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest
from neo4j.exceptions import ConstraintError, ServiceUnavailable

from polystore.core.exceptions import (
    ConnectionError,
    DuplicateKeyError,
    NotFoundError,
    QueryCompileError,
    TransactionError,
)
from polystore.database.adapters.neo4j_adapter import Neo4jAdapter, to_native


# ==============================================================================
# FAKE DRIVER
# ==============================================================================

Responder = Callable[[str, Dict[str, Any]], List[Dict[str, Any]]]


class FakeResult:
    def __init__(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = rows

    async def data(self) -> List[Dict[str, Any]]:
        return self._rows


class FakeTransaction:
    def __init__(self, driver: "FakeDriver") -> None:
        self.driver = driver
        self.state = "open"

    async def run(self, statement: str, params: Dict[str, Any]) -> FakeResult:
        return self.driver.execute(statement, params, via="tx")

    async def commit(self) -> None:
        self.state = "committed"

    async def rollback(self) -> None:
        self.state = "rolled back"


class FakeSession:
    def __init__(self, driver: "FakeDriver", database: Optional[str]) -> None:
        self.driver = driver
        self.database = database
        self.closed = False

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def run(self, statement: str, params: Dict[str, Any]) -> FakeResult:
        return self.driver.execute(statement, params, via="session")

    async def begin_transaction(self) -> FakeTransaction:
        tx = FakeTransaction(self.driver)
        self.driver.transactions.append(tx)
        return tx

    async def close(self) -> None:
        self.closed = True


class FakeDriver:
    """Records every statement and answers through a responder."""

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.responder = responder or (lambda statement, params: [])
        self.calls: List[Tuple[str, Dict[str, Any], str]] = []
        self.sessions: List[FakeSession] = []
        self.transactions: List[FakeTransaction] = []
        self.closed = False
        self.reachable = True

    def session(self, database: Optional[str] = None) -> FakeSession:
        session = FakeSession(self, database)
        self.sessions.append(session)
        return session

    def execute(self, statement: str, params: Dict[str, Any], via: str) -> FakeResult:
        self.calls.append((statement, params, via))
        return FakeResult(self.responder(statement, params))

    async def verify_connectivity(self) -> None:
        if not self.reachable:
            raise ServiceUnavailable("unreachable")

    async def close(self) -> None:
        self.closed = True

    @property
    def statements(self) -> List[str]:
        return [statement for statement, _, _ in self.calls]


def echo_records(statement: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
    if "rows" in params:
        return [{"record": row} for row in params["rows"]]
    if "props" in params:
        return [{"record": params["props"]}]
    return []


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver(echo_records)


@pytest.fixture
def neo4j_adapter(driver: FakeDriver) -> Neo4jAdapter:
    adapter = Neo4jAdapter({
        "uri": "neo4j://localhost:7687",
        "username": "neo4j",
        "password": "secret",
        "database": "graph",
    })
    adapter._driver = driver
    return adapter


# ==============================================================================
# LIFECYCLE
# ==============================================================================

@pytest.mark.asyncio
class TestLifecycle:
    """Tests for driver construction and connectivity checks."""

    async def test_initialize(self):
        adapter = Neo4jAdapter({"uri": "neo4j://db:7687", "username": "u", "password": "p"})
        fake = FakeDriver()
        with patch(
            "polystore.database.adapters.neo4j_adapter.AsyncGraphDatabase.driver",
            return_value=fake,
        ) as factory:
            await adapter.initialize()

        assert factory.call_args.kwargs["auth"] == ("u", "p")
        assert await adapter.health_check() is True
        await adapter.close()
        assert fake.closed is True
        assert await adapter.health_check() is False

    async def test_initialize_failure(self):
        adapter = Neo4jAdapter({"uri": "neo4j://db:7687", "username": "u", "password": "p"})
        fake = FakeDriver()
        fake.reachable = False
        with patch(
            "polystore.database.adapters.neo4j_adapter.AsyncGraphDatabase.driver",
            return_value=fake,
        ):
            with pytest.raises(ConnectionError):
                await adapter.initialize()
        assert fake.closed is True

    async def test_requires_initialize(self):
        adapter = Neo4jAdapter({"uri": "neo4j://db:7687"})
        with pytest.raises(ConnectionError):
            await adapter.count("Person")


# ==============================================================================
# CRUD
# ==============================================================================

@pytest.mark.asyncio
class TestCrud:
    """Tests for generated Cypher and record conversion."""

    async def test_create(self, neo4j_adapter, driver):
        created = await neo4j_adapter.create("Person", {"name": "Ada", "nickname": None})

        statement, params, via = driver.calls[0]
        assert statement == "CREATE (n:`Person`) SET n = $props RETURN properties(n) AS record"
        assert via == "session"
        assert driver.sessions[0].database == "graph"
        assert set(params["props"]) == {"name", "id"}
        assert created == params["props"]

    async def test_create_list_uses_unwind(self, neo4j_adapter, driver):
        created = await neo4j_adapter.create("Person", [{"name": "Ada"}, {"name": "Alan"}])

        assert driver.statements[0].startswith("UNWIND $rows AS row CREATE (n:`Person`)")
        assert [p["name"] for p in created] == ["Ada", "Alan"]

    async def test_invalid_label(self, neo4j_adapter):
        with pytest.raises(QueryCompileError):
            await neo4j_adapter.create("Person`) DETACH DELETE (x", {"name": "x"})

    async def test_find_many(self, neo4j_adapter, driver):
        driver.responder = lambda s, p: [{"record": {"id": "1", "name": "Ada", "age": 36}}]

        found = await neo4j_adapter.find_many(
            "Person", {"age": {"$gte": 21}}, sort={"age": -1}, offset=1, limit=5, fields=["name"]
        )

        statement, params, _ = driver.calls[0]
        assert statement == (
            "MATCH (n:`Person`) WHERE n.`age` >= $p0 WITH n ORDER BY n.`age` DESC "
            "SKIP $skip LIMIT $limit RETURN properties(n) AS record"
        )
        assert params == {"p0": 21, "skip": 1, "limit": 5}
        assert found == [{"id": "1", "name": "Ada"}]

    async def test_find_many_without_limit_is_unbounded(self, neo4j_adapter, driver):
        await neo4j_adapter.find_many("Person")
        await neo4j_adapter.find_relationships("KNOWS")

        assert "LIMIT" not in driver.statements[0]
        assert "limit" not in driver.calls[0][1]
        assert not driver.statements[1].endswith("LIMIT $limit")

    async def test_find_one_converts_driver_values(self, neo4j_adapter, driver):
        class Temporal:
            def to_native(self):
                return datetime(2024, 1, 2)

        driver.responder = lambda s, p: [{"record": {"id": "1", "born": Temporal()}}]

        found = await neo4j_adapter.find_one("Person", {"id": "1"})

        assert found == {"id": "1", "born": datetime(2024, 1, 2)}
        assert driver.calls[0][1]["limit"] == 1

    async def test_update(self, neo4j_adapter, driver):
        driver.responder = lambda s, p: [{"matched": 2}]

        result = await neo4j_adapter.update("Person", {"name": "Ada"}, {"$set": {"age": 37}})

        statement, params, _ = driver.calls[0]
        assert statement == (
            "MATCH (n:`Person`) WHERE n.`name` = $p0 SET n.`age` = $u0 "
            "RETURN count(n) AS matched"
        )
        assert params == {"p0": "Ada", "u0": 37}
        assert (result.matched_count, result.modified_count) == (2, 2)

    async def test_delete_and_count(self, neo4j_adapter, driver):
        driver.responder = lambda s, p: [{"deleted": 3}] if "DELETE" in s else [{"total": 0}]

        assert (await neo4j_adapter.delete("Person", None)).deleted_count == 3
        assert "DETACH DELETE" in driver.statements[0]
        assert await neo4j_adapter.exists("Person", {"name": "Ada"}) is False
        assert driver.statements[1] == (
            "MATCH (n:`Person`) WHERE n.`name` = $p0 RETURN count(n) AS total"
        )

    async def test_constraint_error_is_duplicate(self, neo4j_adapter, driver):
        def responder(statement, params):
            raise ConstraintError("already exists")

        driver.responder = responder

        with pytest.raises(DuplicateKeyError):
            await neo4j_adapter.create("Person", {"id": "1"})

    async def test_json_fields_are_stored_as_strings(self, neo4j_adapter, driver):
        await neo4j_adapter.create_model("Person", {"name": "string", "meta": "json"})

        created = await neo4j_adapter.create("Person", {"name": "Ada", "meta": {"a": [1]}})

        props = driver.calls[-1][1]["props"]
        assert props["meta"] == '{"a": [1]}'
        assert created["meta"] == {"a": [1]}


# ==============================================================================
# BULK OPERATIONS & TRANSACTIONS
# ==============================================================================

@pytest.mark.asyncio
class TestBulkAndTransactions:
    """Tests for UNWIND batches and explicit transactions."""

    async def test_bulk_create_falls_back_per_item(self, neo4j_adapter, driver):
        def responder(statement, params):
            if statement.startswith("UNWIND") or params.get("props", {}).get("name") == "dup":
                raise ConstraintError("already exists")
            return []

        driver.responder = responder

        result = await neo4j_adapter.bulk_create("Person", [
            {"id": "1", "name": "Ada"},
            {"id": "2", "name": "dup"},
            "bad",
            {"id": "3", "name": "Alan"},
        ])

        assert result.inserted_count == 2
        assert result.inserted_ids == ["1", "3"]
        assert [e.index for e in result.errors] == [1, 2]
        assert isinstance(result.errors[0].error, DuplicateKeyError)

    async def test_bulk_create_batches(self, neo4j_adapter, driver):
        neo4j_adapter.batch_size = 2

        result = await neo4j_adapter.bulk_create("Person", [{"name": str(i)} for i in range(5)])

        assert result.inserted_count == 5
        assert len(driver.calls) == 3

    async def test_transaction_commits(self, neo4j_adapter, driver):
        async def work(tx):
            await tx.create("Person", {"name": "Ada"})
            return await tx.count("Person")

        await neo4j_adapter.transaction(work)

        assert [via for _, _, via in driver.calls] == ["tx", "tx"]
        assert driver.transactions[0].state == "committed"
        assert driver.sessions[0].closed is True

    async def test_transaction_rolls_back(self, neo4j_adapter, driver):
        async def work(tx):
            await tx.create("Person", {"name": "Ada"})
            raise RuntimeError("abort")

        with pytest.raises(TransactionError):
            await neo4j_adapter.transaction(work)

        assert driver.transactions[0].state == "rolled back"
        assert driver.sessions[0].closed is True

    async def test_bulk_create_in_transaction_fails_whole_batch(self, neo4j_adapter, driver):
        def responder(statement, params):
            raise ConstraintError("already exists")

        driver.responder = responder

        async def work(tx):
            return await tx.bulk_create("Person", [{"id": "1"}, {"id": "2"}])

        result = await neo4j_adapter.transaction(work)

        assert result.inserted_count == 0
        assert [e.index for e in result.errors] == [0, 1]
        assert len(driver.calls) == 1


# ==============================================================================
# GRAPH OPERATIONS & MODEL MANAGEMENT
# ==============================================================================

@pytest.mark.asyncio
class TestGraph:
    """Tests for relationships and schema statements."""

    async def test_create_relationship(self, neo4j_adapter, driver):
        driver.responder = lambda s, p: [{
            "properties": {"since": 2020},
            "source": {"id": "a"},
            "target": {"id": "b"},
        }]

        rel = await neo4j_adapter.create_relationship(
            "Person", "a", "Person", "b", "KNOWS", {"since": 2020, "note": None}
        )

        statement, params, _ = driver.calls[0]
        assert "CREATE (a)-[r:`KNOWS`]->(b) SET r = $props" in statement
        assert params == {"from_id": "a", "to_id": "b", "props": {"since": 2020}}
        assert rel == {
            "type": "KNOWS",
            "properties": {"since": 2020},
            "source": {"id": "a"},
            "target": {"id": "b"},
        }

    async def test_create_relationship_missing_node(self, neo4j_adapter, driver):
        driver.responder = lambda s, p: []

        with pytest.raises(NotFoundError):
            await neo4j_adapter.create_relationship("Person", "a", "Person", "zz", "KNOWS")

    async def test_find_relationships(self, neo4j_adapter, driver):
        await neo4j_adapter.find_relationships("KNOWS", {"since": {"$gte": 2000}}, limit=10)

        statement, params, _ = driver.calls[0]
        assert "MATCH (a)-[r:`KNOWS`]->(b) WHERE r.`since` >= $p0" in statement
        assert params == {"p0": 2000, "limit": 10}

    async def test_create_model_statements(self, neo4j_adapter, driver, users_schema):
        await neo4j_adapter.create_model("users", users_schema)

        assert driver.statements == [
            "CREATE CONSTRAINT `users_id_unique` IF NOT EXISTS FOR (n:`users`) "
            "REQUIRE n.`id` IS UNIQUE",
            "CREATE CONSTRAINT `users_email_unique` IF NOT EXISTS FOR (n:`users`) "
            "REQUIRE n.`email` IS UNIQUE",
            "CREATE INDEX `users_age_index` IF NOT EXISTS FOR (n:`users`) ON (n.`age`)",
        ]

    async def test_drop_model_statements(self, neo4j_adapter, driver, users_schema):
        await neo4j_adapter.create_model("users", users_schema)
        driver.calls.clear()

        await neo4j_adapter.drop_model("users")

        assert driver.statements[0] == "MATCH (n:`users`) DETACH DELETE n"
        assert "DROP INDEX `users_age_index` IF EXISTS" in driver.statements

    async def test_raw_query(self, neo4j_adapter, driver):
        driver.responder = lambda s, p: [{"n": 1}]

        assert await neo4j_adapter.query("RETURN $n AS n", {"n": 1}) == [{"n": 1}]
        assert await neo4j_adapter.aggregate("Person", ("RETURN 1 AS n", {})) == [{"n": 1}]


def test_to_native_recurses():
    class Point:
        def to_native(self):
            return (1, 2)

    assert to_native({"a": [Point(), {"b": Point()}]}) == {"a": [(1, 2), {"b": (1, 2)}]}
