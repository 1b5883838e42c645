# ==============================================================================
# CONFTEST - Pytest Fixtures and Configuration
# ==============================================================================
# Shared fixtures for all tests
# In-memory SQLite through aiosqlite, Redis through fakeredis
# ==============================================================================

from __future__ import annotations

from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio
from fakeredis import aioredis

from polystore.database.adapters.redis_adapter import RedisAdapter
from polystore.database.adapters.sqlite_adapter import SQLiteAdapter
from polystore.database.factory import DatabaseFactory
from polystore.database.schema import ModelSchema


# ==============================================================================
# SCHEMA FIXTURES
# ==============================================================================

USERS_SCHEMA: Dict[str, Any] = {
    "email": {"type": "string", "required": True, "unique": True},
    "name": "string",
    "age": {"type": "integer", "index": True},
    "score": "number",
    "active": {"type": "boolean", "default": True},
    "tags": {"type": "array", "items": "string"},
}


@pytest.fixture
def users_schema() -> ModelSchema:
    """Schema for the ``users`` model used across adapter tests."""
    return ModelSchema.from_definition("users", USERS_SCHEMA)


@pytest.fixture
def sample_users() -> list:
    return [
        {"email": "ada@example.com", "name": "Ada", "age": 36, "tags": ["math"]},
        {"email": "alan@example.com", "name": "Alan", "age": 41, "tags": ["crypto", "math"]},
        {"email": "grace@example.com", "name": "Grace", "age": 29, "tags": []},
        {"email": "nobody@example.com", "name": None, "age": None},
    ]


# ==============================================================================
# ADAPTER FIXTURES
# ==============================================================================

@pytest_asyncio.fixture
async def sqlite_adapter() -> AsyncGenerator[SQLiteAdapter, None]:
    """
    Create in-memory SQLite adapter with the ``users`` model.

    Yields fresh database for each test.
    """
    adapter = SQLiteAdapter({"database": ":memory:", "best_effort_updates": True})
    await adapter.initialize()
    await adapter.create_model("users", USERS_SCHEMA)

    yield adapter

    await adapter.close()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[aioredis.FakeRedis, None]:
    client = aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client


@pytest_asyncio.fixture
async def redis_adapter(redis_client: aioredis.FakeRedis) -> AsyncGenerator[RedisAdapter, None]:
    """Redis adapter backed by fakeredis."""
    adapter = RedisAdapter({"host": "localhost", "port": 6379}, client=redis_client)
    await adapter.initialize()

    yield adapter

    await adapter.close()


@pytest.fixture
def factory() -> DatabaseFactory:
    return DatabaseFactory()
