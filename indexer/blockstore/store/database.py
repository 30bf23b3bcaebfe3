"""
Block database: atomic checkpoint-plus-data commits for block ranges.

BlockDatabase owns the connection lifecycle and the status table holding
the last fully committed block height. Each call to transact() runs one
block range:

1. Open a transaction (serializable by default)
2. Move the checkpoint to the range end, if it is still below the range start
3. Run the handler against a fresh Store
4. Flush the Store and commit, or roll back on any failure

Serialization conflicts re-run the whole sequence a bounded number of times.

Invariants:
    - Checkpoint height never decreases
    - Checkpoint update and entity writes commit together or not at all
    - Only SerializationConflictError is retried
    - Handler errors reach the caller unchanged, after rollback
    - The entity registry is frozen once connect() is called

How to change safely:
    - Keep the checkpoint update in the same transaction as the handler's writes
    - Handlers must be safe to re-run: staged writes are discarded on retry
    - Test with injected conflicts on commit and inside handlers
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import IsolationLevel, StoreConfig
from ..driver.base import Driver, DriverConnection, create_driver
from ..errors import ConnectionError, SerializationConflictError
from ..schema.registry import EntityRegistry, get_registry
from .store import Store
from .tx import TransactionHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[Store], Awaitable[None]]


class BlockDatabase:
    """Transaction manager for block-range commits.

    Thread safety:
        One transact() at a time per instance; callers serialize their calls.
        Separate instances (or processes) may compete for the same database.

    Example:
        >>> db = BlockDatabase(StoreConfig.from_env())
        >>> height = await db.connect()
        >>> async def handler(store: Store) -> None:
        ...     store.lazy_upsert(Account, Account(id="alice", balance=10))
        >>> await db.transact(height + 1, height + 100, handler)
        >>> await db.close()
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        registry: Optional[EntityRegistry] = None,
        driver: Optional[Driver] = None,
    ) -> None:
        """Initialize the database.

        Args:
            config: Store configuration (loaded from env if not provided)
            registry: Entity registry (the global one if not provided)
            driver: Driver to use (created from config on connect if not provided)
        """
        self.config = config or StoreConfig.from_env()
        self.registry = registry if registry is not None else get_registry()
        self.isolation_level = self.config.isolation_level
        self.max_retries = self.config.max_conflict_retries
        self._driver_override = driver
        self._driver: Optional[Driver] = None
        self._last_committed = -1
        self._retry_count = 0

    @property
    def is_connected(self) -> bool:
        return self._driver is not None

    @property
    def last_committed(self) -> int:
        """Last height committed through this instance (-1 if none)."""
        return self._last_committed

    def _status_table(self, driver: Driver) -> str:
        return driver.qualify(self.config.state_schema, "status")

    async def connect(self) -> int:
        """Connect and read (or initialize) the checkpoint height.

        The entity registry is frozen on first connect; entity types cannot
        be registered afterwards.

        Returns:
            The stored checkpoint height, -1 for a fresh database

        Raises:
            ConnectionError: If already connected or initialization fails
        """
        if self._driver is not None:
            raise ConnectionError("Already connected")

        # Entity types are fixed for the life of the connection
        if not self.registry.frozen:
            self.registry.freeze()

        driver = self._driver_override or create_driver(self.config)
        await driver.connect()
        try:
            height = await self._init_status(driver)
        except Exception as e:
            try:
                await driver.close()
            except Exception as close_error:
                logger.debug(f"Ignoring close error after failed connect: {close_error}")
            raise ConnectionError(
                f"Failed to initialize status table: {e}", backend=driver.name
            ) from e

        self._driver = driver
        logger.info(
            "Connected to block database",
            extra={
                "backend": driver.name,
                "schema": self.config.state_schema,
                "height": height,
                "schema_fingerprint": self.registry.fingerprint,
            },
        )
        return height

    async def _init_status(self, driver: Driver) -> int:
        table = self._status_table(driver)
        tx = await TransactionHandle.begin(driver, IsolationLevel.SERIALIZABLE)
        async with tx:
            conn = tx.connection
            for statement in driver.schema_statements(self.config.state_schema):
                await conn.execute(statement)
            await conn.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "id integer primary key, "
                "height integer not null)"
            )
            rows = await conn.execute(f"SELECT height FROM {table} WHERE id = 0")
            if rows:
                return int(rows[0]["height"])
            await conn.execute(f"INSERT INTO {table} (id, height) VALUES (0, -1)")
            return -1

    async def close(self) -> None:
        """Release the connection. Safe to call when not connected."""
        driver = self._driver
        self._driver = None
        self._last_committed = -1
        if driver is not None:
            await driver.close()
            logger.info("Closed block database")

    async def transact(self, from_height: int, to_height: int, handler: Handler) -> None:
        """Commit one block range atomically with its entity writes.

        Args:
            from_height: First block of the range
            to_height: Last block of the range
            handler: Coroutine function receiving the Store

        Raises:
            ValueError: If the range is invalid
            ConnectionError: If not connected
            SerializationConflictError: If conflicts outlast the retry budget
            Exception: Whatever the handler raised
        """
        if from_height < 0 or from_height > to_height:
            raise ValueError(f"Invalid block range [{from_height}, {to_height}]")

        await self._with_retries(
            lambda: self._run_transaction(from_height, to_height, handler),
            from_height,
            to_height,
        )

    async def advance(self, height: int) -> None:
        """Record progress up to height when no entity data changed.

        A no-op when height was the last committed height.
        """
        if self._last_committed == height:
            return

        async def run() -> None:
            tx = await self._create_tx(height, height)
            await tx.commit()
            self._last_committed = height

        await self._with_retries(run, height, height)

    async def _with_retries(
        self, attempt: Callable[[], Awaitable[T]], from_height: int, to_height: int
    ) -> T:
        retries = self.max_retries
        while True:
            try:
                return await attempt()
            except SerializationConflictError as e:
                if not retries:
                    logger.error(
                        "Serialization conflict retries exhausted",
                        extra={"from": from_height, "to": to_height, "retries": self.max_retries},
                    )
                    raise
                retries -= 1
                self._retry_count += 1
                logger.warning(
                    f"Serialization conflict, retrying block range: {e}",
                    extra={"from": from_height, "to": to_height, "retries_left": retries},
                )

    async def _run_transaction(self, from_height: int, to_height: int, handler: Handler) -> None:
        tx = await self._create_tx(from_height, to_height)
        store = Store(tx, self._require_driver(), self.registry, batch_size=self.config.batch_size)

        try:
            await handler(store)
            await store.flush()
            store.clear()
        except BaseException:
            store.clear()
            await self._rollback_quietly(tx)
            raise

        await tx.commit()
        self._last_committed = to_height
        logger.debug("Committed block range", extra={"from": from_height, "to": to_height})

    async def _create_tx(self, from_height: int, to_height: int) -> TransactionHandle:
        driver = self._require_driver()
        tx = await TransactionHandle.begin(driver, self.isolation_level)
        try:
            await self._update_height(driver, tx.connection, from_height, to_height)
            return tx
        except BaseException:
            await self._rollback_quietly(tx)
            raise

    async def _update_height(
        self, driver: Driver, conn: DriverConnection, from_height: int, to_height: int
    ) -> bool:
        """Move the checkpoint to to_height if it is still below from_height."""
        changed = await conn.execute_rowcount(
            f"UPDATE {self._status_table(driver)} SET height = ? WHERE id = 0 AND height < ?",
            (to_height, from_height),
        )
        if changed != 1:
            logger.warning(
                "Status table was already advanced by another process; "
                "make sure only one processor writes to this schema",
                extra={"from": from_height, "to": to_height},
            )
            return False
        return True

    async def _rollback_quietly(self, tx: TransactionHandle) -> None:
        try:
            await tx.rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}", exc_info=True)

    def _require_driver(self) -> Driver:
        if self._driver is None:
            raise ConnectionError("Not connected")
        return self._driver

    @property
    def stats(self) -> dict:
        """Get database statistics."""
        return {
            "connected": self.is_connected,
            "last_committed": self._last_committed,
            "conflict_retries": self._retry_count,
            "schema_fingerprint": self.registry.fingerprint,
        }
