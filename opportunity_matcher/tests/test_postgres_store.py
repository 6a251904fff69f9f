"""
Tests for the pgvector store with the pooled cursor replaced by a fake.
"""

from contextlib import asynccontextmanager

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from conftest import DIMENSIONS, KeywordProvider
from opportunity_matcher.core.exceptions import StoreError, StoreUnavailable
from opportunity_matcher.libs.embeddings.chain import EmbeddingProviderChain
from opportunity_matcher.libs.vector_store.postgres import PgVectorStore
from opportunity_matcher.services.embedding_sync import EmbeddingSyncService
from opportunity_matcher.utils import db_utils


class FakeCursor:
    """Records statements; rejects writes for one item id like a bad row."""

    def __init__(self, rows=None, reject_item=None):
        self.rows = list(rows or [])
        self.reject_item = reject_item
        self.executed = []
        self.rowcount = 0

    async def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        if self.reject_item is not None and isinstance(params, tuple) and params[0] == self.reject_item:
            raise psycopg.DataError(f"expected {DIMENSIONS} dimensions, not 3")
        self.rowcount = 1

    async def fetchall(self):
        return self.rows

    async def fetchone(self):
        return self.rows[0] if self.rows else None


@pytest.fixture
def fake_cursor(monkeypatch):
    cursor = FakeCursor()
    opened = []

    @asynccontextmanager
    async def fake_get_db_cursor(pool_name="default", conninfo=None):
        opened.append((pool_name, conninfo))
        yield cursor

    monkeypatch.setattr("opportunity_matcher.libs.vector_store.postgres.get_db_cursor", fake_get_db_cursor)
    cursor.opened = opened
    return cursor


@pytest.mark.asyncio
async def test_rejected_statement_becomes_store_error(fake_cursor):
    fake_cursor.reject_item = "art-1"
    store = PgVectorStore(dimensions=DIMENSIONS, timeout=1.0)

    with pytest.raises(StoreError) as exc_info:
        await store.upsert("art-1", [1.0] * DIMENSIONS, {})

    assert not isinstance(exc_info.value, StoreUnavailable)
    assert exc_info.value.context == {"operation": "upsert"}
    assert isinstance(exc_info.value.__cause__, psycopg.DataError)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [psycopg.OperationalError("connection refused"), psycopg.InterfaceError("connection closed"), PoolTimeout("no connection")],
)
async def test_connection_failures_become_store_unavailable(error):
    store = PgVectorStore(dimensions=DIMENSIONS, timeout=1.0)

    async def failing():
        raise error

    with pytest.raises(StoreUnavailable):
        await store._execute("list_ids", failing())


@pytest.mark.asyncio
async def test_upsert_reports_stale_write_from_rowcount(fake_cursor):
    store = PgVectorStore(dimensions=DIMENSIONS, timeout=1.0)

    assert await store.upsert("math-1", [1.0] * DIMENSIONS, {"content_hash": "h1"}) is True

    query, params = fake_cursor.executed[-1]
    assert "WHERE opportunity_embeddings.updated_at <= EXCLUDED.updated_at" in query
    assert params[0] == "math-1"
    assert params[3] == "h1"


@pytest.mark.asyncio
async def test_store_queries_through_its_own_conninfo(fake_cursor):
    fake_cursor.rows = [{"item_id": "math-1"}, {"item_id": "art-1"}]
    store = PgVectorStore(dimensions=DIMENSIONS, pool_name="reporting", conninfo="postgresql://replica/opportunities")

    assert await store.list_ids() == {"math-1", "art-1"}
    assert fake_cursor.opened == [("reporting", "postgresql://replica/opportunities")]


@pytest.mark.asyncio
async def test_query_short_circuits_for_non_positive_k(fake_cursor):
    store = PgVectorStore(dimensions=DIMENSIONS)

    assert await store.query([1.0] * DIMENSIONS, 0, 0.5) == []
    assert fake_cursor.executed == []


@pytest.mark.asyncio
async def test_sync_run_survives_a_rejected_row(fake_cursor, catalog):
    fake_cursor.reject_item = "art-1"
    fake_cursor.rows = [{"item_id": "gone-1"}]
    store = PgVectorStore(dimensions=DIMENSIONS, timeout=1.0)
    chain = EmbeddingProviderChain([KeywordProvider()], dimensions=DIMENSIONS, retry_attempts=1, backoff_seconds=0)
    sync = EmbeddingSyncService(catalog, chain, store, batch_size=50, batch_delay_seconds=0)

    result = await sync.sync()

    assert [e.id for e in result.errors] == ["art-1"]
    assert result.created == 2
    assert result.deleted == 1
    deletes = [params for query, params in fake_cursor.executed if query.startswith("DELETE")]
    assert deletes == [("gone-1",)]


class FakePool:
    check_connection = None

    def __init__(self, conninfo, **kwargs):
        self.conninfo = conninfo
        self.closed = False

    async def open(self):
        pass

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_connection_pool_uses_the_given_conninfo(monkeypatch):
    monkeypatch.setattr(db_utils, "AsyncConnectionPool", FakePool)

    pool = await db_utils.get_connection_pool("custom", "postgresql://other/db")
    default_pool = await db_utils.get_connection_pool("default-url")

    assert pool.conninfo == "postgresql://other/db"
    assert default_pool.conninfo == db_utils.settings.database_url
    assert await db_utils.get_connection_pool("custom") is pool
