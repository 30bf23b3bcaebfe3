"""
Test entities and helpers shared by the block store test suite.

Entity tables are created directly with sqlite3: the store writes entity
rows but never owns their DDL.
"""

import sqlite3
from typing import Any, Dict, List, Optional

from pydantic import Field

from indexer.blockstore.driver.sqlite import SqliteDriver
from indexer.blockstore.errors import SerializationConflictError
from indexer.blockstore.schema import Entity


class Account(Entity):
    balance: int = 0
    owner: Optional[str] = None


class Transfer(Entity):
    account_id: str
    amount: int


class Thing(Entity):
    x: int = 0
    y: int = 0


class Document(Entity):
    data: Dict[str, Any] = Field(default_factory=dict)


class Marker(Entity):
    pass


ENTITY_DDL = [
    "CREATE TABLE account (id TEXT PRIMARY KEY, balance INTEGER NOT NULL, owner TEXT)",
    "CREATE TABLE transfer ("
    "id TEXT PRIMARY KEY, "
    "account_id TEXT NOT NULL REFERENCES account(id), "
    "amount INTEGER NOT NULL)",
    "CREATE TABLE thing (id TEXT PRIMARY KEY, x INTEGER, y INTEGER)",
    "CREATE TABLE document (id TEXT PRIMARY KEY, data TEXT)",
    "CREATE TABLE marker (id TEXT PRIMARY KEY)",
]

STATUS_TABLE = '"squid_processor_status"'


def create_tables(db_path: str) -> None:
    """Create the test entity tables in a SQLite file."""
    conn = sqlite3.connect(db_path)
    try:
        for statement in ENTITY_DDL:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


def query(db_path: str, sql: str, params: tuple = ()) -> List[tuple]:
    """Read committed rows through an independent connection."""
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


def execute(db_path: str, sql: str, params: tuple = ()) -> None:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def read_checkpoint(db_path: str) -> Optional[int]:
    rows = query(db_path, f"SELECT height FROM {STATUS_TABLE} WHERE id = 0")
    return rows[0][0] if rows else None


class FlakyConnection:
    """Driver connection whose commit raises injected conflicts."""

    def __init__(self, inner, driver: "FlakyDriver") -> None:
        self._inner = inner
        self._driver = driver

    async def execute(self, sql, params=()):
        return await self._inner.execute(sql, params)

    async def execute_rowcount(self, sql, params=()):
        return await self._inner.execute_rowcount(sql, params)

    async def execute_many(self, sql, seq_of_params):
        await self._inner.execute_many(sql, seq_of_params)

    async def commit(self):
        if self._driver.commit_failures > 0:
            self._driver.commit_failures -= 1
            raise SerializationConflictError("injected conflict", backend="test")
        await self._inner.commit()

    async def rollback(self):
        self._driver.rollbacks += 1
        await self._inner.rollback()

    async def close(self):
        await self._inner.close()


class FlakyDriver:
    """SqliteDriver wrapper counting transactions and failing commits on demand."""

    def __init__(self, inner: SqliteDriver, commit_failures: int = 0) -> None:
        self._inner = inner
        self.commit_failures = commit_failures
        self.begins = 0
        self.rollbacks = 0
        self.closed = False

    def __getattr__(self, name):
        return getattr(self._inner, name)

    @property
    def is_connected(self) -> bool:
        return self._inner.is_connected

    async def connect(self) -> None:
        await self._inner.connect()

    async def close(self) -> None:
        self.closed = True
        await self._inner.close()

    async def begin(self, isolation_level):
        self.begins += 1
        return FlakyConnection(await self._inner.begin(isolation_level), self)


