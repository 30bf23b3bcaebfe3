"""
Transaction handle: explicit commit/rollback over one native transaction.

The transaction manager opens a transaction, hands it to a handler across
several awaits, and only afterwards decides whether to commit or roll back.
TransactionHandle makes that decision point explicit instead of tying it to
a lexical ``with`` block.

State machine:
    OPEN ──commit()──▶ COMMITTING ──▶ COMMITTED
      │                    │
      │                    └─(commit failed)──▶ ROLLED_BACK
      └──rollback()──▶ ROLLED_BACK

Invariants:
    - Exactly one terminal transition from OPEN
    - The driver connection is released on every terminal transition
    - commit()/rollback() return only after the native transaction has finished
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from ..config import IsolationLevel
from ..driver.base import Driver, DriverConnection
from ..errors import NoActiveTransactionError, TransactionClosedError

logger = logging.getLogger(__name__)


class TxState(Enum):
    """Lifecycle states of a TransactionHandle."""

    OPEN = "open"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionHandle:
    """A live database transaction with explicit commit and rollback.

    Example:
        >>> tx = await TransactionHandle.begin(driver, IsolationLevel.SERIALIZABLE)
        >>> await tx.connection.execute("UPDATE ...")
        >>> await tx.commit()

    Or as an async context manager (commit on success, rollback on error):
        >>> async with await TransactionHandle.begin(driver, level) as tx:
        ...     await tx.connection.execute("INSERT ...")
    """

    def __init__(self, connection: DriverConnection, isolation_level: IsolationLevel) -> None:
        self._connection = connection
        self.isolation_level = isolation_level
        self._state = TxState.OPEN

    @classmethod
    async def begin(cls, driver: Driver, isolation_level: IsolationLevel) -> TransactionHandle:
        """Open a connection and start a transaction on it.

        Raises:
            ConnectionError: If the driver is not connected
            SerializationConflictError: If the transaction cannot start due to a conflict
        """
        connection = await driver.begin(isolation_level)
        logger.debug("Transaction started", extra={"isolation_level": isolation_level.value})
        return cls(connection, isolation_level)

    @property
    def state(self) -> TxState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == TxState.OPEN

    @property
    def connection(self) -> DriverConnection:
        """The live connection.

        Raises:
            TransactionClosedError: Unless the transaction is OPEN
        """
        if self._state != TxState.OPEN:
            raise TransactionClosedError(
                f"Transaction is {self._state.value}", state=self._state.value
            )
        return self._connection

    async def commit(self) -> None:
        """Commit and wait for the native transaction to finish.

        If the native commit fails the transaction is rolled back and the
        commit error is re-raised.

        Raises:
            TransactionClosedError: If the transaction is not OPEN
            SerializationConflictError: If the commit lost a conflict
        """
        if self._state != TxState.OPEN:
            raise TransactionClosedError(
                f"Cannot commit: transaction is {self._state.value}", state=self._state.value
            )

        self._state = TxState.COMMITTING
        try:
            await self._connection.commit()
        except BaseException:
            self._state = TxState.ROLLED_BACK
            await self._discard()
            raise
        self._state = TxState.COMMITTED
        await self._release()

    async def rollback(self) -> None:
        """Roll back and wait for the native transaction to finish.

        A no-op when the transaction already reached a terminal state or
        when the database reports that nothing is left to roll back.

        Raises:
            Exception: Genuine rollback failures from the driver
        """
        if self._state != TxState.OPEN:
            return

        self._state = TxState.ROLLED_BACK
        try:
            await self._connection.rollback()
        except NoActiveTransactionError:
            logger.debug("Rollback found no active transaction")
        finally:
            await self._release()

    async def _discard(self) -> None:
        """Best-effort cleanup after a failed commit."""
        try:
            await self._connection.rollback()
        except Exception as e:
            logger.debug(f"Rollback after failed commit: {e}")
        await self._release()

    async def _release(self) -> None:
        try:
            await self._connection.close()
        except Exception as e:
            logger.warning(f"Failed to close transaction connection: {e}")

    async def __aenter__(self) -> TransactionHandle:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()

    def __repr__(self) -> str:
        return f"TransactionHandle(state={self._state.value}, isolation={self.isolation_level.value})"
