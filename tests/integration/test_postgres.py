"""
Integration tests against a live PostgreSQL server.

These tests require a reachable server configured through the POSTGRES_*
environment variables (defaults: localhost:5432, database aiframe_test,
user/password postgres).

Tests cover:
- Entity adapter contract on JSONB
- Migration runner with a dedicated schema
- Event store concurrency under SERIALIZABLE transactions
"""

import asyncio
import os
import tempfile
import textwrap
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

from aiframe.persistence.adapters.postgres import PostgresAdapter, PostgresDatabase
from aiframe.persistence.config import MigrationConfig, PostgresConfig
from aiframe.persistence.errors import ConcurrencyError, ConnectivityError
from aiframe.persistence.events import EventStore, NewEvent, Snapshot
from aiframe.persistence.migrations.runner import MigrationRunner

# Skip PostgreSQL tests unless explicitly enabled
POSTGRES_ENABLED = os.environ.get("AIFRAME_POSTGRES_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not POSTGRES_ENABLED,
    reason="PostgreSQL tests disabled. Set AIFRAME_POSTGRES_TESTS=1 to enable.",
)


def postgres_config(**overrides) -> PostgresConfig:
    values = dict(
        host=os.environ.get("POSTGRES_HOST", "localhost"),
        port=int(os.environ.get("POSTGRES_PORT", "5432")),
        database=os.environ.get("POSTGRES_DB", "aiframe_test"),
        user=os.environ.get("POSTGRES_USER", "postgres"),
        password=os.environ.get("POSTGRES_PASSWORD", "postgres"),
        max_pool_size=5,
    )
    values.update(overrides)
    return PostgresConfig(**values)


@pytest.fixture
def schema():
    """Unique schema per test so runs never see each other's tables."""
    return f"aiframe_test_{uuid.uuid4().hex[:12]}"


@pytest_asyncio.fixture
async def database(schema):
    database = PostgresDatabase(postgres_config())
    yield database
    async with database.acquire() as conn:
        await conn.execute(f"DROP SCHEMA IF EXISTS {schema} CASCADE")
    await database.close()


class TestPostgresAdapter:
    """Tests for PostgresAdapter."""

    @pytest_asyncio.fixture
    async def adapter(self, database, schema):
        return PostgresAdapter(postgres_config(schema=schema, table="users"), database)

    @pytest.mark.asyncio
    async def test_crud(self, adapter):
        await adapter.save("u1", {"type": "user", "name": "Ada"})
        await adapter.save("u1", {"type": "user", "name": "Ada L."})

        assert await adapter.load("u1") == {"type": "user", "name": "Ada L."}
        assert len(await adapter.query()) == 1

        await adapter.delete("u1")
        assert await adapter.load("u1") is None

    @pytest.mark.asyncio
    async def test_query_is_json_typed(self, adapter):
        await adapter.save("a", {"age": 30})
        await adapter.save("b", {"age": "30"})
        await adapter.save("c", {"active": True})
        await adapter.save("d", {"active": 1})
        await adapter.save("e", {"nick": None})
        await adapter.save("f", {})

        assert await adapter.query({"age": 30}) == [{"age": 30}]
        assert await adapter.query({"age": 30.0}) == [{"age": 30}]
        assert await adapter.query({"age": "30"}) == [{"age": "30"}]
        assert await adapter.query({"active": True}) == [{"active": True}]
        assert await adapter.query({"active": 1}) == [{"active": 1}]
        assert await adapter.query({"nick": None}) == [{"nick": None}]
        assert await adapter.query({"tags": ["x"]}) == []

    @pytest.mark.asyncio
    async def test_query_int_beyond_64_bits_matches_nothing(self, adapter):
        await adapter.save("a", {"n": 2**70})
        await adapter.save("b", {"n": 2**63 - 1})

        assert await adapter.load("a") == {"n": 2**70}
        assert await adapter.query({"n": 2**70}) == []
        assert await adapter.query({"n": 2**63 - 1}) == [{"n": 2**63 - 1}]

    @pytest.mark.asyncio
    async def test_scoped_call_provisions_table(self, database, adapter):
        async with database.transaction() as conn:
            await adapter.save("a", {"v": 1}, scope=conn)
            await adapter.save("b", {"v": 2}, scope=conn)

        assert not adapter.is_initialized
        assert await adapter.query() == [{"v": 1}, {"v": 2}]

    @pytest.mark.asyncio
    async def test_updated_at_advances(self, adapter):
        await adapter.save("u1", {"v": 1})
        first = await adapter.load_record("u1")
        await asyncio.sleep(0.01)
        await adapter.save("u1", {"v": 2})
        second = await adapter.load_record("u1")

        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_transaction_rollback(self, adapter):
        with pytest.raises(RuntimeError):
            async with adapter.transaction() as tx:
                await tx.save("a", {"v": 1})
                raise RuntimeError("abort")

        assert await adapter.load("a") is None

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        adapter = PostgresAdapter(postgres_config(host="127.0.0.1", port=1, table="users"))
        with pytest.raises(ConnectivityError):
            await adapter.load("u1")


class TestPostgresMigrations:
    """Tests for MigrationRunner on PostgreSQL."""

    @pytest.fixture
    def migrations_dir(self):
        """Create temporary migrations directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.mark.asyncio
    async def test_up_and_down(self, database, schema, migrations_dir):
        (migrations_dir / "001_widgets.py").write_text(
            textwrap.dedent(
                f"""
                id = "w1"
                name = "widgets"
                timestamp = 1


                async def up(conn):
                    await conn.execute("CREATE TABLE {schema}.widgets (id TEXT PRIMARY KEY)")


                async def down(conn):
                    await conn.execute("DROP TABLE {schema}.widgets")
                """
            )
        )
        runner = MigrationRunner(
            database, MigrationConfig(schema=schema, migrations_dir=str(migrations_dir))
        )

        results = await runner.up()
        assert [r.ok for r in results] == [True]
        assert [r.id for r in await runner.get_applied_migrations()] == ["w1"]

        results = await runner.down()
        assert [r.ok for r in results] == [True]
        assert await runner.get_applied_migrations() == []


class TestPostgresEventStore:
    """Tests for EventStore on PostgreSQL."""

    @pytest_asyncio.fixture
    async def store(self, database, schema):
        return EventStore(database, schema=schema)

    @pytest.mark.asyncio
    async def test_append_and_replay(self, store):
        await store.append("acct", [NewEvent("deposit", {"amount": 1}) for _ in range(10)])
        await store.save_snapshot("acct", Snapshot(version=5, state={"balance": 6}))

        snapshot, events = await store.load_stream("acct")

        assert snapshot.version == 5
        assert [e.version for e in events] == [6, 7, 8, 9]

    @pytest.mark.asyncio
    async def test_concurrent_appends(self, store):
        """Conflicting appenders fail with ConcurrencyError; successes stay contiguous."""
        await store.initialize()
        results = await asyncio.gather(
            *(store.append("hot", [NewEvent("tick", {"n": n})]) for n in range(5)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        assert succeeded
        assert all(isinstance(e, ConcurrencyError) for e in failed)
        assert [e.version for e in await store.read("hot")] == list(range(len(succeeded)))
