"""
Integration tests for BlockDatabase over SQLite.

Tests cover:
- Connection lifecycle and checkpoint initialization
- Atomic checkpoint-plus-data commits
- Rollback on handler and flush failures
- Serialization conflict retries (commit and handler paths)
- Concurrent block-range transactions
- advance()
"""

import asyncio
import logging
from dataclasses import replace

import pytest
import pytest_asyncio

from indexer.blockstore.driver.sqlite import SqliteDriver
from indexer.blockstore.errors import (
    ClosedStoreError,
    ConnectionError,
    MissingFactoryError,
    SerializationConflictError,
)
from indexer.blockstore.schema import Entity, EntityRegistry, RegistryFrozenError
from indexer.blockstore.store import BlockDatabase

from ..helpers import Account, FlakyDriver, Thing, Transfer, execute, query, read_checkpoint


def _sqlite_driver(config, **overrides):
    return SqliteDriver(replace(config.sqlite, **overrides))


class TestBlockDatabaseLifecycle:
    """Tests for connect/close."""

    @pytest.mark.asyncio
    async def test_connect_initializes_checkpoint(self, config, registry, db_path):
        db = BlockDatabase(config, registry)

        height = await db.connect()

        assert height == -1
        assert db.is_connected
        assert db.last_committed == -1
        assert read_checkpoint(db_path) == -1
        await db.close()

    @pytest.mark.asyncio
    async def test_connect_reads_existing_checkpoint(self, config, registry, db_path):
        db = BlockDatabase(config, registry)
        await db.connect()
        await db.close()
        execute(db_path, 'UPDATE "squid_processor_status" SET height = 41 WHERE id = 0')

        db = BlockDatabase(config, registry)
        assert await db.connect() == 41
        await db.close()

    @pytest.mark.asyncio
    async def test_custom_state_schema(self, config, registry, db_path):
        db = BlockDatabase(replace(config, state_schema="indexer_state"), registry)

        await db.connect()
        await db.transact(0, 3, _noop)
        await db.close()

        assert query(db_path, 'SELECT height FROM "indexer_state_status"') == [(3,)]

    @pytest.mark.asyncio
    async def test_connect_freezes_registry(self, config, registry):
        """Entity types cannot change once a database is connected."""
        db = BlockDatabase(config, registry)

        await db.connect()

        assert registry.frozen
        assert db.stats["schema_fingerprint"] == registry.fingerprint
        assert registry.fingerprint.startswith("sha256:")

        class LateEntity(Entity):
            pass

        with pytest.raises(RegistryFrozenError):
            registry.register(LateEntity)
        await db.close()

    @pytest.mark.asyncio
    async def test_connect_shares_frozen_registry(self, config, registry):
        first = BlockDatabase(config, registry)
        second = BlockDatabase(config, registry)

        await first.connect()
        await second.connect()

        assert first.stats["schema_fingerprint"] == second.stats["schema_fingerprint"]
        await first.close()
        await second.close()

    @pytest.mark.asyncio
    async def test_connect_keeps_empty_registry(self, config):
        """An explicitly passed registry is used even when it is empty."""
        registry = EntityRegistry()
        db = BlockDatabase(config, registry)

        await db.connect()

        assert db.registry is registry
        assert registry.frozen
        await db.close()

    @pytest.mark.asyncio
    async def test_connect_twice_raises(self, config, registry):
        db = BlockDatabase(config, registry)
        await db.connect()

        with pytest.raises(ConnectionError, match="Already connected"):
            await db.connect()
        await db.close()

    @pytest.mark.asyncio
    async def test_connect_failure_closes_driver(self, config, registry):
        """Initialization failures close the driver and chain the cause."""

        class BrokenDriver(FlakyDriver):
            async def begin(self, isolation_level):
                raise RuntimeError("disk on fire")

        driver = BrokenDriver(_sqlite_driver(config))
        db = BlockDatabase(config, registry, driver=driver)

        with pytest.raises(ConnectionError) as exc_info:
            await db.connect()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert driver.closed
        assert not db.is_connected

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config, registry):
        db = BlockDatabase(config, registry)
        await db.connect()
        await db.transact(0, 5, _noop)

        await db.close()
        await db.close()

        assert not db.is_connected
        assert db.last_committed == -1

    @pytest.mark.asyncio
    async def test_transact_requires_connection(self, config, registry):
        db = BlockDatabase(config, registry)

        with pytest.raises(ConnectionError, match="Not connected"):
            await db.transact(0, 1, _noop)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("from_height,to_height", [(-1, 0), (5, 4)])
    async def test_transact_rejects_invalid_range(self, config, registry, from_height, to_height):
        db = BlockDatabase(config, registry)
        await db.connect()

        with pytest.raises(ValueError):
            await db.transact(from_height, to_height, _noop)
        await db.close()


async def _noop(store):
    return None


class TestBlockDatabaseTransact:
    """Tests for transact()."""

    @pytest.fixture
    def driver(self, config):
        return FlakyDriver(_sqlite_driver(config))

    @pytest_asyncio.fixture
    async def db(self, config, registry, driver):
        db = BlockDatabase(config, registry, driver=driver)
        await db.connect()
        yield db
        await db.close()

    @pytest.mark.asyncio
    async def test_commits_checkpoint_and_entities(self, db, db_path):
        async def handler(store):
            store.lazy_upsert(Account, Account(id="alice", balance=10))
            store.lazy_upsert(Transfer, Transfer(id="t1", account_id="alice", amount=10))

        await db.transact(0, 10, handler)

        assert read_checkpoint(db_path) == 10
        assert db.last_committed == 10
        assert query(db_path, "SELECT id, balance FROM account") == [("alice", 10)]
        assert query(db_path, "SELECT id FROM transfer") == [("t1",)]

    @pytest.mark.asyncio
    async def test_checkpoint_advances_across_ranges(self, db, db_path):
        await db.transact(0, 10, _noop)
        await db.transact(11, 20, _noop)

        assert read_checkpoint(db_path) == 20

    @pytest.mark.asyncio
    async def test_checkpoint_never_decreases(self, db, db_path, caplog):
        """A range starting at or below the checkpoint leaves it unchanged."""
        await db.transact(0, 10, _noop)

        with caplog.at_level(logging.WARNING, logger="indexer.blockstore.store.database"):
            await db.transact(5, 8, _noop)

        assert read_checkpoint(db_path) == 10
        assert "already advanced" in caplog.text

    @pytest.mark.asyncio
    async def test_handler_error_rolls_back(self, db, db_path):
        """A raising handler leaves no trace and reaches the caller unchanged."""
        calls = []

        async def handler(store):
            calls.append(1)
            store.lazy_upsert(Account, Account(id="alice", balance=10))
            await store.flush()
            raise RuntimeError("handler failed")

        with pytest.raises(RuntimeError, match="handler failed"):
            await db.transact(0, 10, handler)

        assert calls == [1]
        assert read_checkpoint(db_path) == -1
        assert db.last_committed == -1
        assert query(db_path, "SELECT id FROM account") == []

    @pytest.mark.asyncio
    async def test_missing_factory_rolls_back(self, db, db_path):
        async def handler(store):
            store.lazy_upsert(Thing, Thing(id="a", x=1))
            store.lazy_load(Account, "ghost")

        with pytest.raises(MissingFactoryError):
            await db.transact(0, 10, handler)

        assert read_checkpoint(db_path) == -1
        assert query(db_path, "SELECT id FROM thing") == []

    @pytest.mark.asyncio
    async def test_store_closed_after_transact(self, db):
        captured = []

        async def handler(store):
            captured.append(store)

        await db.transact(0, 1, handler)

        with pytest.raises(ClosedStoreError):
            await captured[0].get(Thing, "a")

    @pytest.mark.asyncio
    async def test_merge_on_update(self, db, db_path):
        execute(db_path, "INSERT INTO thing (id, x, y) VALUES ('a', 1, 2)")

        async def handler(store):
            store.lazy_upsert(Thing, Thing(id="a", x=9))

        await db.transact(0, 1, handler)

        assert query(db_path, "SELECT x, y FROM thing WHERE id = 'a'") == [(9, 2)]

    @pytest.mark.asyncio
    async def test_commit_conflicts_retried(self, db, driver, db_path, caplog):
        """Two conflicting commits followed by a clean one succeed."""
        driver.commit_failures = 2
        calls = []

        async def handler(store):
            calls.append(1)
            store.lazy_upsert(Account, Account(id=f"acc{len(calls)}"))

        with caplog.at_level(logging.WARNING, logger="indexer.blockstore.store.database"):
            await db.transact(0, 10, handler)

        assert len(calls) == 3
        assert read_checkpoint(db_path) == 10
        # Only the final attempt's writes survive
        assert query(db_path, "SELECT id FROM account") == [("acc3",)]
        retries = [r for r in caplog.records if "retrying" in r.getMessage()]
        assert len(retries) == 2
        assert db.stats["conflict_retries"] == 2

    @pytest.mark.asyncio
    async def test_conflicts_exhaust_retries(self, db, driver, db_path):
        driver.commit_failures = 4
        calls = []

        async def handler(store):
            calls.append(1)

        with pytest.raises(SerializationConflictError):
            await db.transact(0, 10, handler)

        assert len(calls) == 4
        assert read_checkpoint(db_path) == -1
        assert db.last_committed == -1

    @pytest.mark.asyncio
    async def test_handler_conflicts_retried(self, db, db_path):
        """Conflicts raised from inside the handler are retried too."""
        calls = []

        async def handler(store):
            calls.append(1)
            if len(calls) <= 2:
                raise SerializationConflictError("conflict inside handler")
            store.lazy_upsert(Thing, Thing(id="a"))

        await db.transact(0, 10, handler)

        assert len(calls) == 3
        assert query(db_path, "SELECT id FROM thing") == [("a",)]

    @pytest.mark.asyncio
    async def test_retry_budget_is_configurable(self, config, registry, db_path):
        driver = FlakyDriver(_sqlite_driver(config), commit_failures=1)
        db = BlockDatabase(replace(config, max_conflict_retries=0), registry, driver=driver)
        await db.connect()

        with pytest.raises(SerializationConflictError):
            await db.transact(0, 10, _noop)

        assert read_checkpoint(db_path) == -1
        await db.close()

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, db):
        calls = []

        async def handler(store):
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            await db.transact(0, 10, handler)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, db, db_path):
        started = asyncio.Event()

        async def handler(store):
            store.lazy_upsert(Thing, Thing(id="a"))
            await store.flush()
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(db.transact(0, 10, handler))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert read_checkpoint(db_path) == -1
        assert query(db_path, "SELECT id FROM thing") == []


class TestBlockDatabaseAdvance:
    """Tests for advance()."""

    @pytest.fixture
    def driver(self, config):
        return FlakyDriver(_sqlite_driver(config))

    @pytest_asyncio.fixture
    async def db(self, config, registry, driver):
        db = BlockDatabase(config, registry, driver=driver)
        await db.connect()
        yield db
        await db.close()

    @pytest.mark.asyncio
    async def test_advance_moves_checkpoint(self, db, db_path):
        await db.advance(7)

        assert read_checkpoint(db_path) == 7
        assert db.last_committed == 7

    @pytest.mark.asyncio
    async def test_advance_same_height_opens_no_transaction(self, db, driver):
        await db.transact(0, 5, _noop)
        begins = driver.begins

        await db.advance(5)

        assert driver.begins == begins

    @pytest.mark.asyncio
    async def test_advance_never_decreases(self, db, db_path):
        await db.advance(7)
        await db.advance(3)

        assert read_checkpoint(db_path) == 7

    @pytest.mark.asyncio
    async def test_advance_retries_conflicts(self, db, driver, db_path):
        driver.commit_failures = 1

        await db.advance(9)

        assert read_checkpoint(db_path) == 9


class TestConcurrentTransactions:
    """Two processors competing for the same database."""

    @pytest.mark.asyncio
    async def test_overlapping_ranges_advance_once(self, config, registry, db_path, caplog):
        """The second writer waits for the lock, then finds the checkpoint already moved."""
        db1 = BlockDatabase(config, registry)
        db2 = BlockDatabase(config, registry)
        await db1.connect()
        await db2.connect()

        first_started = asyncio.Event()
        release = asyncio.Event()

        async def first(store):
            store.lazy_upsert(Thing, Thing(id="first"))
            first_started.set()
            await release.wait()

        async def second(store):
            store.lazy_upsert(Thing, Thing(id="second"))

        with caplog.at_level(logging.WARNING, logger="indexer.blockstore.store.database"):
            task1 = asyncio.create_task(db1.transact(0, 10, first))
            await first_started.wait()
            task2 = asyncio.create_task(db2.transact(0, 10, second))
            await asyncio.sleep(0.1)
            release.set()
            await asyncio.gather(task1, task2)

        assert read_checkpoint(db_path) == 10
        warnings = [r for r in caplog.records if "already advanced" in r.getMessage()]
        assert len(warnings) == 1

        await db1.close()
        await db2.close()

    @pytest.mark.asyncio
    async def test_locked_writer_fails_cleanly(self, config, registry, db_path):
        """With a short busy timeout and no retries the loser gets a conflict."""
        db1 = BlockDatabase(config, registry)
        db2 = BlockDatabase(
            replace(config, max_conflict_retries=0),
            registry,
            driver=_sqlite_driver(config, busy_timeout_ms=50),
        )
        await db1.connect()
        await db2.connect()

        first_started = asyncio.Event()
        release = asyncio.Event()

        async def first(store):
            store.lazy_upsert(Thing, Thing(id="first"))
            first_started.set()
            await release.wait()

        async def second(store):
            store.lazy_upsert(Thing, Thing(id="second"))

        task1 = asyncio.create_task(db1.transact(0, 10, first))
        await first_started.wait()

        with pytest.raises(SerializationConflictError):
            await db2.transact(0, 10, second)

        release.set()
        await task1

        assert read_checkpoint(db_path) == 10
        assert query(db_path, "SELECT id FROM thing") == [("first",)]
        assert db2.last_committed == -1

        await db1.close()
        await db2.close()
