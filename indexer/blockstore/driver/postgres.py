"""
PostgreSQL driver for the block store (psycopg 3, async).

connect() opens a psycopg_pool AsyncConnectionPool shared by every
transaction of the process. Each transaction borrows one connection with
autocommit off; psycopg opens the native transaction, at the requested
isolation level, on the first statement. close() on the transaction
connection hands it back to the pool.

Invariants:
    - SQLSTATE 40001 (serialization_failure) surfaces as SerializationConflictError
    - The status table lives in a real schema created on demand
    - dict/list values are sent as JSONB, enum members as their value

How to change safely:
    - Run the PostgreSQL integration suite (BLOCKSTORE_PG_TESTS=1)
    - Never enable autocommit on a transaction connection
    - A borrowed connection must be returned to the pool exactly once
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from ..config import ConnectionConfig, IsolationLevel
from ..errors import SERIALIZATION_FAILURE_SQLSTATE, ConnectionError, SerializationConflictError
from .base import Row, quote_identifier

logger = logging.getLogger(__name__)

POOL_NAME = "indexer-blockstore"

_PG_ISOLATION = {
    IsolationLevel.SERIALIZABLE: psycopg.IsolationLevel.SERIALIZABLE,
    IsolationLevel.REPEATABLE_READ: psycopg.IsolationLevel.REPEATABLE_READ,
    IsolationLevel.READ_COMMITTED: psycopg.IsolationLevel.READ_COMMITTED,
}


def _adapt_placeholders(sql: str) -> str:
    return sql.replace("?", "%s")


def _translate_error(exc: psycopg.Error) -> Exception:
    """Map a psycopg error to a block store error, or return it unchanged."""
    if getattr(exc, "sqlstate", None) == SERIALIZATION_FAILURE_SQLSTATE:
        return SerializationConflictError(f"PostgreSQL serialization failure: {exc}", backend="postgres")
    return exc


class PostgresConnection:
    """One pooled psycopg AsyncConnection carrying one transaction."""

    def __init__(self, conn: psycopg.AsyncConnection, pool: AsyncConnectionPool) -> None:
        self._conn = conn
        self._pool = pool
        self._returned = False

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        try:
            cursor = await self._conn.execute(_adapt_placeholders(sql), tuple(params) or None)
            if cursor.description is None:
                return []
            return await cursor.fetchall()
        except psycopg.Error as e:
            translated = _translate_error(e)
            if translated is e:
                raise
            raise translated from e

    async def execute_rowcount(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            cursor = await self._conn.execute(_adapt_placeholders(sql), tuple(params) or None)
            return cursor.rowcount
        except psycopg.Error as e:
            translated = _translate_error(e)
            if translated is e:
                raise
            raise translated from e

    async def execute_many(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> None:
        try:
            async with self._conn.cursor() as cursor:
                await cursor.executemany(_adapt_placeholders(sql), [tuple(p) for p in seq_of_params])
        except psycopg.Error as e:
            translated = _translate_error(e)
            if translated is e:
                raise
            raise translated from e

    async def commit(self) -> None:
        try:
            await self._conn.commit()
        except psycopg.Error as e:
            translated = _translate_error(e)
            if translated is e:
                raise
            raise translated from e

    async def rollback(self) -> None:
        await self._conn.rollback()

    async def close(self) -> None:
        """Return the connection to the pool."""
        if self._returned:
            return
        self._returned = True
        await self._pool.putconn(self._conn)


class PostgresDriver:
    """PostgreSQL implementation of the Driver protocol.

    Example:
        >>> driver = PostgresDriver(ConnectionConfig.from_env())
        >>> await driver.connect()
        >>> conn = await driver.begin(IsolationLevel.SERIALIZABLE)
    """

    name = "postgres"

    def __init__(self, config: ConnectionConfig) -> None:
        """Initialize the driver.

        Args:
            config: Connection configuration
        """
        self.config = config
        self._pool: Optional[AsyncConnectionPool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    def _connection_error(self, exc: Exception) -> ConnectionError:
        return ConnectionError(
            f"Failed to connect to PostgreSQL at {self.config.host}:{self.config.port}: {exc}",
            backend=self.name,
        )

    async def connect(self) -> None:
        """Open the connection pool and verify the server is reachable.

        Raises:
            ConnectionError: If the pool cannot reach the server in time
        """
        if self._pool is not None:
            return
        pool = AsyncConnectionPool(
            self.config.conninfo(),
            min_size=self.config.pool_min_size,
            max_size=self.config.pool_max_size,
            timeout=self.config.connect_timeout,
            kwargs={"autocommit": False, "row_factory": dict_row},
            name=POOL_NAME,
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=self.config.connect_timeout)
            async with pool.connection() as conn:
                await conn.execute("SELECT 1")
        except psycopg.OperationalError as e:
            await pool.close()
            raise self._connection_error(e) from e
        except BaseException:
            await pool.close()
            raise

        self._pool = pool
        logger.debug(
            "PostgreSQL driver connected",
            extra={
                "host": self.config.host,
                "port": self.config.port,
                "db_name": self.config.db_name,
                "pool_max_size": self.config.pool_max_size,
            },
        )

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
        logger.debug("PostgreSQL driver closed")

    async def begin(self, isolation_level: IsolationLevel) -> PostgresConnection:
        pool = self._pool
        if pool is None:
            raise ConnectionError("PostgreSQL driver is not connected", backend=self.name)
        try:
            conn = await pool.getconn()
        except psycopg.OperationalError as e:
            raise self._connection_error(e) from e
        try:
            await conn.set_isolation_level(_PG_ISOLATION[isolation_level])
        except BaseException:
            await pool.putconn(conn)
            raise
        return PostgresConnection(conn, pool)

    def quote(self, identifier: str) -> str:
        return quote_identifier(identifier)

    def qualify(self, schema: str, table: str) -> str:
        return f"{quote_identifier(schema)}.{quote_identifier(table)}"

    def schema_statements(self, schema: str) -> List[str]:
        return [f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)}"]

    def encode(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (dict, list)):
            return Jsonb(value)
        return value
