"""
Base protocol and types for the relational driver abstraction.

This module defines the Driver and DriverConnection protocols that all
backends must implement, along with the driver factory.

Invariants:
    - One DriverConnection carries exactly one native transaction at a time
    - SQL is written with ``?`` placeholders; drivers adapt them if needed
    - Backend conflict errors surface as SerializationConflictError
    - Backend "nothing to roll back" errors surface as NoActiveTransactionError

How to change safely:
    - Protocol changes require updating all implementations
    - Keep error translation inside the driver; callers never see native conflict errors
"""

from __future__ import annotations

from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Protocol,
    Sequence,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import IsolationLevel, StoreConfig

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@runtime_checkable
class DriverConnection(Protocol):
    """A dedicated database connection holding one native transaction.

    The connection is opened by ``Driver.begin()`` with the transaction
    already started, and is unusable after ``close()``.
    """

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        """Run a statement and return its rows (empty for DML/DDL).

        Raises:
            SerializationConflictError: On a concurrent write conflict
        """
        ...

    @abstractmethod
    async def execute_rowcount(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a DML statement and return the number of affected rows."""
        ...

    @abstractmethod
    async def execute_many(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> None:
        """Run one statement for every parameter tuple."""
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Commit the native transaction.

        Raises:
            SerializationConflictError: If the commit lost a conflict
        """
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the native transaction.

        Raises:
            NoActiveTransactionError: If no transaction is active
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        ...


@runtime_checkable
class Driver(Protocol):
    """Protocol for relational backends.

    Example:
        >>> driver = SqliteDriver(config.sqlite)
        >>> await driver.connect()
        >>> conn = await driver.begin(IsolationLevel.SERIALIZABLE)
        >>> rows = await conn.execute("SELECT 1 AS one")
        >>> await conn.commit()
        >>> await conn.close()
    """

    name: str

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend for use.

        Raises:
            ConnectionError: If the database cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def begin(self, isolation_level: "IsolationLevel") -> DriverConnection:
        """Open a connection with a started transaction.

        Raises:
            ConnectionError: If not connected
            SerializationConflictError: If the transaction cannot start due to a conflict
        """
        ...

    @abstractmethod
    def quote(self, identifier: str) -> str:
        """Quote an identifier."""
        ...

    @abstractmethod
    def qualify(self, schema: str, table: str) -> str:
        """Quoted name of a table living in a schema."""
        ...

    @abstractmethod
    def schema_statements(self, schema: str) -> List[str]:
        """DDL needed before tables can be created in a schema."""
        ...

    @abstractmethod
    def encode(self, value: Any) -> Any:
        """Convert a Python value into a driver parameter."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has succeeded and close() has not been called."""
        ...


def quote_identifier(identifier: str) -> str:
    """Double-quote an SQL identifier."""
    return '"' + identifier.replace('"', '""') + '"'


def create_driver(config: "StoreConfig") -> Driver:
    """Factory function to create a driver from configuration.

    Args:
        config: Store configuration

    Returns:
        Appropriate Driver implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import DatabaseBackend
    from .postgres import PostgresDriver
    from .sqlite import SqliteDriver

    if config.backend == DatabaseBackend.SQLITE:
        return SqliteDriver(config.sqlite)
    elif config.backend == DatabaseBackend.POSTGRES:
        return PostgresDriver(config.connection)
    else:
        raise ValueError(f"Unsupported database backend: {config.backend}")
