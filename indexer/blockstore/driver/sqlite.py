"""
SQLite driver for the block store.

Each transaction gets its own sqlite3 connection. Blocking sqlite3 calls run
in the default executor so that a writer waiting on the database lock does
not stall the event loop.

Invariants:
    - SERIALIZABLE begins with BEGIN IMMEDIATE, so writers are fully serialized
    - "database is locked" surfaces as SerializationConflictError
    - SQLite has no schemas: a table in schema S is named "S_<table>"

How to change safely:
    - Keep every sqlite3 call behind SqliteConnection._run
    - Test lock contention with two concurrent transactions and a short busy timeout
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Sequence, TypeVar

from ..config import IsolationLevel, SqliteConfig
from ..errors import ConnectionError, NoActiveTransactionError, SerializationConflictError
from .base import Row, quote_identifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BEGIN_STATEMENTS = {
    IsolationLevel.SERIALIZABLE: "BEGIN IMMEDIATE",
    IsolationLevel.REPEATABLE_READ: "BEGIN DEFERRED",
    IsolationLevel.READ_COMMITTED: "BEGIN DEFERRED",
}

_CONFLICT_ERROR_NAMES = frozenset(
    {
        "SQLITE_BUSY",
        "SQLITE_BUSY_RECOVERY",
        "SQLITE_BUSY_SNAPSHOT",
        "SQLITE_LOCKED",
        "SQLITE_LOCKED_SHAREDCACHE",
    }
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _translate_error(exc: sqlite3.Error) -> Exception:
    """Map a sqlite3 error to a block store error, or return it unchanged."""
    message = str(exc)
    error_name = getattr(exc, "sqlite_errorname", "")
    if error_name in _CONFLICT_ERROR_NAMES or "database is locked" in message:
        return SerializationConflictError(f"SQLite write conflict: {message}", backend="sqlite")
    if "no transaction is active" in message:
        return NoActiveTransactionError(message)
    return exc


class SqliteConnection:
    """One sqlite3 connection carrying one transaction.

    Thread safety:
        Calls are serialized with an asyncio lock and executed in the
        default thread pool, one at a time.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = asyncio.Lock()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            try:
                return await asyncio.get_event_loop().run_in_executor(None, fn, *args)
            except sqlite3.Error as e:
                translated = _translate_error(e)
                if translated is e:
                    raise
                raise translated from e

    def _execute_sync(self, sql: str, params: Sequence[Any]) -> List[Row]:
        cursor = self._conn.execute(sql, tuple(params))
        if cursor.description is None:
            return []
        return [dict(row) for row in cursor.fetchall()]

    def _rowcount_sync(self, sql: str, params: Sequence[Any]) -> int:
        return self._conn.execute(sql, tuple(params)).rowcount

    def _execute_many_sync(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> None:
        self._conn.executemany(sql, [tuple(p) for p in seq_of_params])

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        return await self._run(self._execute_sync, sql, params)

    async def execute_rowcount(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self._run(self._rowcount_sync, sql, params)

    async def execute_many(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> None:
        await self._run(self._execute_many_sync, sql, seq_of_params)

    async def commit(self) -> None:
        await self._run(self._conn.execute, "COMMIT")

    async def rollback(self) -> None:
        await self._run(self._conn.execute, "ROLLBACK")

    async def close(self) -> None:
        await self._run(self._conn.close)


class SqliteDriver:
    """SQLite implementation of the Driver protocol.

    Example:
        >>> driver = SqliteDriver(SqliteConfig(path="/tmp/blocks.db"))
        >>> await driver.connect()
        >>> conn = await driver.begin(IsolationLevel.SERIALIZABLE)
    """

    name = "sqlite"

    def __init__(self, config: SqliteConfig) -> None:
        """Initialize the driver.

        Args:
            config: SQLite configuration
        """
        self.config = config
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _open(self) -> sqlite3.Connection:
        """Open and configure a connection (blocking)."""
        conn = sqlite3.connect(
            self.config.path,
            timeout=self.config.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.config.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.config.cache_size_pages}")
            if self.config.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
        except Exception:
            conn.close()
            raise
        return conn

    async def connect(self) -> None:
        """Create the database file and verify it can be opened."""
        path = self.config.path
        if path != ":memory:" and not path.startswith("file:"):
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = await asyncio.get_event_loop().run_in_executor(None, self._open)
        except sqlite3.Error as e:
            raise ConnectionError(f"Failed to open SQLite database {path}: {e}", backend=self.name) from e
        conn.close()
        self._connected = True
        logger.debug("SQLite driver connected", extra={"path": path})

    async def close(self) -> None:
        self._connected = False
        logger.debug("SQLite driver closed", extra={"path": self.config.path})

    async def begin(self, isolation_level: IsolationLevel) -> SqliteConnection:
        if not self._connected:
            raise ConnectionError("SQLite driver is not connected", backend=self.name)
        try:
            raw = await asyncio.get_event_loop().run_in_executor(None, self._open)
        except sqlite3.Error as e:
            translated = _translate_error(e)
            if translated is e:
                raise
            raise translated from e

        conn = SqliteConnection(raw)
        try:
            await conn.execute(_BEGIN_STATEMENTS[isolation_level])
        except BaseException:
            await conn.close()
            raise
        return conn

    def quote(self, identifier: str) -> str:
        return quote_identifier(identifier)

    def qualify(self, schema: str, table: str) -> str:
        return quote_identifier(f"{schema}_{table}")

    def schema_statements(self, schema: str) -> List[str]:
        return []

    def encode(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            # Out-of-range integers would overflow SQLite's INTEGER storage
            return value if _INT64_MIN <= value <= _INT64_MAX else str(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value
