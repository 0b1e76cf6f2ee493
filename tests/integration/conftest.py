"""Pytest fixtures for PostgreSQL integration tests.

Connection settings come from the same DB_* environment variables the
service reads. Every test is skipped when the database is unreachable.
"""

import uuid
from typing import Generator

import psycopg2
import pytest

from voting_api.config import Settings
from voting_api.database import PostgresBallotStore, StorageError


@pytest.fixture(scope="session")
def postgres_settings() -> Settings:
    return Settings(STORAGE_BACKEND="postgres", DB_POOL_MIN_SIZE=1, DB_POOL_MAX_SIZE=25)


@pytest.fixture(scope="session")
def postgres_store(postgres_settings) -> Generator[PostgresBallotStore, None, None]:
    """Initialized PostgreSQL ballot store shared by the session.

    Yields a store whose schema has been created.
    """
    store = PostgresBallotStore(postgres_settings)
    try:
        store.initialize()
    except (StorageError, psycopg2.Error) as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    yield store

    store.close()


@pytest.fixture
def session_id(postgres_store) -> Generator[str, None, None]:
    """Unique session id; its rows are removed after the test."""
    value = f"it-{uuid.uuid4().hex[:12]}"

    yield value

    postgres_store.drop(value)
    with postgres_store._cursor() as cursor:
        cursor.execute("DELETE FROM vote_sessions WHERE session_id = %s", (value,))
