"""
Pytest configuration and fixtures for secret store tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from dotenv import load_dotenv

from envelope_secrets import (
    InMemoryBackend,
    PostgresBackend,
    SecretManager,
    SecretStoreConfig,
    StorageBackend,
)


class ManualClock:
    """Controllable clock for the in-memory backend."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def memory_backend() -> InMemoryBackend:
    """Create an in-memory backend instance for testing."""
    return InMemoryBackend()


@pytest.fixture
def clocked_backend(clock: ManualClock) -> InMemoryBackend:
    """In-memory backend driven by ``clock``."""
    return InMemoryBackend(clock=clock)


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url, min_size=1, max_size=10)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    await PostgresBackend(pool).create_schema()
    await pool.execute("TRUNCATE TABLE entries CASCADE")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_backend(pg_pool: asyncpg.Pool) -> PostgresBackend:
    """Create a PostgreSQL backend instance for testing."""
    return PostgresBackend(pg_pool)


@pytest.fixture(params=["memory", "postgres"])
def backend(request) -> StorageBackend:
    """Every available backend; PostgreSQL is skipped without DATABASE_URL."""
    if request.param == "memory":
        return InMemoryBackend()
    return request.getfixturevalue("postgres_backend")


@pytest.fixture
def config() -> SecretStoreConfig:
    return SecretStoreConfig()


@pytest.fixture
def manager(backend: StorageBackend, config: SecretStoreConfig) -> SecretManager:
    return SecretManager(backend, config)
