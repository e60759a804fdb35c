"""
Integration tests for the SQLite entity adapter.

Tests cover:
- Upsert, load and delete semantics
- JSON-typed query filters and malformed filters
- Transactions, scoped operations and rollback
- Timestamps, reopening and shared databases
"""

import asyncio
import logging
import os
import sqlite3
import tempfile

import pytest
import pytest_asyncio

from aiframe.persistence.adapters.base import EntityRecord
from aiframe.persistence.adapters.sqlite import SqliteAdapter, SqliteDatabase
from aiframe.persistence.config import SqliteConfig
from aiframe.persistence.errors import ConstraintError


class TestSqliteAdapter:
    """Tests for SqliteAdapter against a temporary database file."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def config(self, data_dir):
        return SqliteConfig(filename=os.path.join(data_dir, "entities.db"), table="users")

    @pytest_asyncio.fixture
    async def adapter(self, config):
        adapter = SqliteAdapter(config)
        yield adapter
        await adapter.disconnect()

    @pytest.mark.asyncio
    async def test_save_and_load(self, adapter):
        """Saved documents load back unchanged."""
        document = {"type": "user", "name": "Ada", "tags": ["admin"], "address": {"city": "Oslo"}}
        await adapter.save("u1", document)

        assert await adapter.load("u1") == document

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, adapter):
        assert await adapter.load("missing") is None
        assert await adapter.load_record("missing") is None

    @pytest.mark.asyncio
    async def test_save_is_upsert(self, adapter):
        """Repeated saves of one key leave one row with the last value."""
        await adapter.save("u1", {"v": 1})
        await adapter.save("u1", {"v": 2})
        await adapter.save("u1", {"v": 2})

        assert await adapter.load("u1") == {"v": 2}
        assert await adapter.query() == [{"v": 2}]

    @pytest.mark.asyncio
    async def test_scalar_and_array_documents(self, adapter):
        await adapter.save("n", 42)
        await adapter.save("s", "text")
        await adapter.save("a", [1, 2, 3])
        await adapter.save("z", None)

        assert await adapter.load("n") == 42
        assert await adapter.load("s") == "text"
        assert await adapter.load("a") == [1, 2, 3]
        assert await adapter.load("z") is None

    @pytest.mark.asyncio
    async def test_delete(self, adapter):
        await adapter.save("u1", {"v": 1})
        await adapter.delete("u1")

        assert await adapter.load("u1") is None
        assert await adapter.query() == []

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(self, adapter):
        await adapter.delete("missing")
        assert await adapter.query() == []

    @pytest.mark.asyncio
    async def test_invalid_inputs_raise_before_io(self, adapter):
        with pytest.raises(ValueError):
            await adapter.save("", {"v": 1})
        with pytest.raises(ValueError):
            await adapter.save("u1", {"v": object()})
        with pytest.raises(ValueError):
            await adapter.save("u1", {"v": float("nan")})
        assert not adapter.is_initialized

    @pytest.mark.asyncio
    async def test_query_equality(self, adapter):
        await adapter.save("c", {"type": "user", "name": "Cy"})
        await adapter.save("a", {"type": "user", "name": "Ada"})
        await adapter.save("b", {"type": "admin", "name": "Bo"})

        users = await adapter.query({"type": "user"})

        assert users == [{"type": "user", "name": "Ada"}, {"type": "user", "name": "Cy"}]

    @pytest.mark.asyncio
    async def test_query_requires_every_term(self, adapter):
        await adapter.save("a", {"type": "user", "age": 30})
        await adapter.save("b", {"type": "user", "age": 40})

        assert await adapter.query({"type": "user", "age": 40}) == [{"type": "user", "age": 40}]
        assert await adapter.query({"type": "user", "age": 50}) == []

    @pytest.mark.asyncio
    async def test_query_distinguishes_documents_sharing_fields(self, adapter):
        await adapter.save("k1", {"type": "user", "age": 30})
        await adapter.save("k2", {"type": "admin", "age": 30})

        assert await adapter.query({"type": "user"}) == [{"type": "user", "age": 30}]
        assert await adapter.query({"type": "user", "age": 25}) == []

    @pytest.mark.asyncio
    async def test_query_is_json_typed(self, adapter):
        """Values compare as JSON: no coercion between strings, numbers and booleans."""
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
        assert await adapter.query({"active": False}) == []
        assert await adapter.query({"nick": None}) == [{"nick": None}]

    @pytest.mark.asyncio
    async def test_query_ignores_nested_fields(self, adapter):
        await adapter.save("a", {"address": {"city": "Oslo"}})
        await adapter.save("b", {"address.city": "Oslo"})

        assert await adapter.query({"address.city": "Oslo"}) == [{"address.city": "Oslo"}]

    @pytest.mark.asyncio
    async def test_query_skips_non_object_documents(self, adapter):
        await adapter.save("a", {"type": "user"})
        await adapter.save("b", "user")
        await adapter.save("c", ["type", "user"])

        assert await adapter.query({"type": "user"}) == [{"type": "user"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filter", [None, {}])
    async def test_empty_filter_matches_all(self, adapter, filter):
        await adapter.save("b", {"n": 2})
        await adapter.save("a", {"n": 1})

        assert await adapter.query(filter) == [{"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "filter",
        [[], "n=1", 7, {"n": [1]}, {"n": {"x": 1}}, {1: 1}, {"": 1}, {'n"': 1}],
    )
    async def test_malformed_filter_matches_nothing(self, adapter, filter):
        await adapter.save("a", {"n": 1})

        assert await adapter.query(filter) == []

    @pytest.mark.asyncio
    async def test_query_int_beyond_64_bits_matches_nothing(self, adapter):
        """Out-of-range integers are a malformed filter, not a driver error."""
        await adapter.save("a", {"n": 2**70})

        assert await adapter.load("a") == {"n": 2**70}
        assert await adapter.query({"n": 2**70}) == []

    @pytest.mark.asyncio
    async def test_query_int_64_bit_bounds(self, adapter):
        await adapter.save("a", {"n": 2**63 - 1})
        await adapter.save("b", {"n": 2**63 - 2})

        assert await adapter.query({"n": 2**63 - 1}) == [{"n": 2**63 - 1}]

    @pytest.mark.asyncio
    async def test_record_timestamps(self, adapter):
        await adapter.save("u1", {"v": 1})
        first = await adapter.load_record("u1")

        await asyncio.sleep(0.01)
        await adapter.save("u1", {"v": 2})
        second = await adapter.load_record("u1")

        assert isinstance(second, EntityRecord)
        assert second.key == "u1"
        assert second.value == {"v": 2}
        assert first.updated_at >= first.created_at
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    @pytest.mark.asyncio
    async def test_transaction_commits(self, adapter):
        await adapter.save("b", {"v": 0})

        async with adapter.transaction() as tx:
            await tx.save("a", {"v": 1})
            await tx.delete("b")
            assert await tx.load("a") == {"v": 1}
            assert await tx.query() == [{"v": 1}]

        assert await adapter.load("a") == {"v": 1}
        assert await adapter.load("b") is None

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, adapter):
        await adapter.save("b", {"v": 0})

        with pytest.raises(RuntimeError, match="boom"):
            async with adapter.transaction() as tx:
                await tx.save("a", {"v": 1})
                await tx.delete("b")
                raise RuntimeError("boom")

        assert await adapter.load("a") is None
        assert await adapter.load("b") == {"v": 0}

    @pytest.mark.asyncio
    async def test_with_transaction_returns_result(self, adapter):
        async def transfer(tx):
            await tx.save("from", {"balance": 90})
            await tx.save("to", {"balance": 10})
            return "done"

        assert await adapter.with_transaction(transfer) == "done"
        assert await adapter.load("to") == {"balance": 10}

    @pytest.mark.asyncio
    async def test_with_transaction_propagates_error(self, adapter):
        async def failing(tx):
            await tx.save("a", {"v": 1})
            raise ValueError("invalid transfer")

        with pytest.raises(ValueError, match="invalid transfer"):
            await adapter.with_transaction(failing)
        assert await adapter.load("a") is None

    @pytest.mark.asyncio
    async def test_scope_from_database_transaction(self, adapter):
        """Operations given a scope join the caller's transaction."""
        await adapter.initialize()
        with pytest.raises(RuntimeError):
            async with adapter.database.transaction() as conn:
                await adapter.save("a", {"v": 1}, scope=conn)
                assert await adapter.load("a", scope=conn) == {"v": 1}
                raise RuntimeError("abort")

        assert await adapter.load("a") is None

    @pytest.mark.asyncio
    async def test_scoped_calls_provision_once_per_transaction(self, adapter, monkeypatch):
        """Scoped calls before initialize() run the DDL only while the table is missing."""
        calls = []
        create_schema = adapter._create_schema

        async def counting_create_schema(conn):
            calls.append(conn)
            await create_schema(conn)

        monkeypatch.setattr(adapter, "_create_schema", counting_create_schema)

        async with adapter.database.transaction() as conn:
            await adapter.save("a", {"v": 1}, scope=conn)
            await adapter.save("b", {"v": 2}, scope=conn)
            assert await adapter.query(scope=conn) == [{"v": 1}, {"v": 2}]
        async with adapter.database.transaction() as conn:
            assert await adapter.load("a", scope=conn) == {"v": 1}

        assert len(calls) == 1
        assert not adapter.is_initialized

    @pytest.mark.asyncio
    async def test_scoped_provisioning_rolls_back_with_caller(self, adapter):
        with pytest.raises(RuntimeError):
            async with adapter.database.transaction() as conn:
                await adapter.save("a", {"v": 1}, scope=conn)
                raise RuntimeError("abort")

        async with adapter.database.transaction() as conn:
            assert await adapter._table_exists(conn) is False
            await adapter.save("a", {"v": 2}, scope=conn)

        assert await adapter.load("a") == {"v": 2}

    @pytest.mark.asyncio
    async def test_unscoped_call_inside_transaction_fails_fast(self, adapter):
        """Using the adapter directly while its transaction is open is an error, not a deadlock."""
        with pytest.raises(RuntimeError, match="already held"):
            async with adapter.transaction():
                await adapter.load("a")

    @pytest.mark.asyncio
    async def test_concurrent_saves(self, adapter):
        await asyncio.gather(*(adapter.save(f"k{i:02d}", {"i": i}) for i in range(20)))

        assert len(await adapter.query()) == 20

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, adapter):
        await adapter.initialize()
        await adapter.initialize()
        assert adapter.is_initialized

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, config):
        adapter = SqliteAdapter(config)
        await adapter.save("u1", {"name": "Ada"})
        await adapter.disconnect()
        assert not adapter.is_initialized

        reopened = SqliteAdapter(config)
        try:
            assert await reopened.load("u1") == {"name": "Ada"}
        finally:
            await reopened.disconnect()

    @pytest.mark.asyncio
    async def test_adapters_share_database(self, data_dir):
        database = SqliteDatabase(os.path.join(data_dir, "shared.db"))
        users = SqliteAdapter(SqliteConfig(filename=database.filename, table="users"), database)
        orders = SqliteAdapter(SqliteConfig(filename=database.filename, table="orders"), database)
        try:
            await users.save("1", {"kind": "user"})
            await orders.save("1", {"kind": "order"})

            assert await users.load("1") == {"kind": "user"}
            assert await orders.load("1") == {"kind": "order"}
        finally:
            await database.close()

    @pytest.mark.asyncio
    async def test_custom_columns(self, data_dir):
        config = SqliteConfig(
            filename=os.path.join(data_dir, "custom.db"),
            table="docs",
            key_column="id",
            data_column="body",
        )
        adapter = SqliteAdapter(config)
        try:
            await adapter.save("d1", {"title": "Hello"})
            assert await adapter.query({"title": "Hello"}) == [{"title": "Hello"}]
        finally:
            await adapter.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_twice(self, config):
        adapter = SqliteAdapter(config)
        await adapter.save("u1", {"v": 1})
        await adapter.disconnect()
        await adapter.disconnect()
        assert not adapter.database.is_connected


class TestSqliteDatabaseFailures:
    """Tests for SqliteDatabase rollback and commit failure handling."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest_asyncio.fixture
    async def database(self, data_dir):
        database = SqliteDatabase(os.path.join(data_dir, "failures.db"))
        async with database.acquire() as conn:
            await conn.execute("CREATE TABLE parents (id TEXT PRIMARY KEY)")
            await conn.execute(
                """
                CREATE TABLE children (
                    id TEXT PRIMARY KEY,
                    parent_id TEXT REFERENCES parents (id) DEFERRABLE INITIALLY DEFERRED
                )
                """
            )
        yield database
        await database.close()

    @staticmethod
    def break_rollback(database, monkeypatch):
        def failing_rollback():
            raise sqlite3.OperationalError("rollback exploded")

        monkeypatch.setattr(database, "_rollback_sync", failing_rollback)

    @pytest.mark.asyncio
    async def test_failed_commit_raises_constraint_error(self, database):
        with pytest.raises(ConstraintError):
            async with database.transaction() as conn:
                await conn.execute("INSERT INTO children (id, parent_id) VALUES ($1, $2)", "c", "p")

        async with database.acquire() as conn:
            assert await conn.fetchval("SELECT count(*) FROM children") == 0

    @pytest.mark.asyncio
    async def test_failed_rollback_after_commit_keeps_commit_error(
        self, database, monkeypatch, caplog
    ):
        self.break_rollback(database, monkeypatch)

        with caplog.at_level(logging.ERROR, logger="aiframe.persistence.adapters.sqlite"):
            with pytest.raises(ConstraintError) as exc_info:
                async with database.transaction() as conn:
                    await conn.execute(
                        "INSERT INTO children (id, parent_id) VALUES ($1, $2)", "c", "p"
                    )

        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)
        assert any("Rollback" in r.getMessage() for r in caplog.records)
        assert not database._lock.locked()

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_original_error(self, database, monkeypatch, caplog):
        self.break_rollback(database, monkeypatch)

        with caplog.at_level(logging.ERROR, logger="aiframe.persistence.adapters.sqlite"):
            with pytest.raises(ValueError, match="boom"):
                async with database.transaction() as conn:
                    await conn.execute("INSERT INTO parents (id) VALUES ($1)", "p")
                    raise ValueError("boom")

        assert any("Rollback failed" in r.getMessage() for r in caplog.records)
        assert not database._lock.locked()
