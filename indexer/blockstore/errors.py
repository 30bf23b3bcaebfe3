"""
Error types for the block store.

This module defines all exception types raised by the store:
- BlockStoreError: Base exception
- ConnectionError: Connection lifecycle failures
- SerializationConflictError: Concurrent write conflict (retryable)
- TransactionClosedError / NoActiveTransactionError: Transaction handle misuse
- ClosedStoreError: Store used outside its transaction
- FlushError / MissingFactoryError: Failures while draining staged writes
- AmbiguousWriteError: Same id staged for both upsert and removal

Invariants:
    - All errors inherit from BlockStoreError
    - Errors include context for debugging
    - Only SerializationConflictError is ever retried
"""

from __future__ import annotations

from typing import Any, Dict, Optional

SERIALIZATION_FAILURE_SQLSTATE = "40001"


class BlockStoreError(Exception):
    """Base exception for all block store errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BLOCKSTORE_ERROR"
        self.details = details or {}


class ConnectionError(BlockStoreError):
    """Database connection lifecycle failed.

    Raised when:
    - connect() is called while already connected
    - An operation needs a connection and none is open
    - Checkpoint initialization fails during connect()
    """

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"backend": backend},
        )
        self.backend = backend


class SerializationConflictError(BlockStoreError):
    """A concurrent transaction conflicted with this one.

    Recoverable by re-running the whole transaction. The database-native
    error is kept as ``__cause__``.
    """

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SERIALIZATION_CONFLICT",
            details={"backend": backend, "sqlstate": SERIALIZATION_FAILURE_SQLSTATE},
        )
        self.sqlstate = SERIALIZATION_FAILURE_SQLSTATE
        self.backend = backend


class TransactionClosedError(BlockStoreError):
    """Transaction handle used after it committed or rolled back."""

    def __init__(self, message: str, state: Optional[str] = None) -> None:
        super().__init__(message, code="TRANSACTION_CLOSED", details={"state": state})
        self.state = state


class NoActiveTransactionError(BlockStoreError):
    """Native rollback found no transaction to roll back."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="NO_ACTIVE_TRANSACTION")


class ClosedStoreError(BlockStoreError):
    """Store method invoked after its transaction has ended."""

    def __init__(self, message: str = "Transaction was already closed") -> None:
        super().__init__(message, code="STORE_CLOSED")


class FlushError(BlockStoreError):
    """Staged writes could not be drained into the transaction."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code or "FLUSH_ERROR", details=details)


class MissingFactoryError(FlushError):
    """A pending id has no database row, no staged value and no factory.

    Attributes:
        entity_name: Registered entity type name
        entity_id: The unresolved id
    """

    def __init__(self, entity_name: str, entity_id: str) -> None:
        super().__init__(
            f"No staged value or factory for {entity_name} '{entity_id}' "
            "and no such row in the database",
            code="MISSING_FACTORY",
            details={"entity_name": entity_name, "entity_id": entity_id},
        )
        self.entity_name = entity_name
        self.entity_id = entity_id


class AmbiguousWriteError(BlockStoreError):
    """The same id is staged for both upsert and removal."""

    def __init__(self, entity_name: str, entity_id: str, staged_as: str) -> None:
        super().__init__(
            f"{entity_name} '{entity_id}' is already staged for {staged_as}",
            code="AMBIGUOUS_WRITE",
            details={
                "entity_name": entity_name,
                "entity_id": entity_id,
                "staged_as": staged_as,
            },
        )
        self.entity_name = entity_name
        self.entity_id = entity_id
        self.staged_as = staged_as


class UnknownEntityError(BlockStoreError):
    """Entity type is not registered."""

    def __init__(self, entity_type: Any) -> None:
        name = getattr(entity_type, "__name__", entity_type)
        super().__init__(
            f"Entity type '{name}' is not registered",
            code="UNKNOWN_ENTITY",
            details={"entity_type": str(name)},
        )


class EntityNotFoundError(BlockStoreError):
    """No entity matched a required lookup."""

    def __init__(self, entity_name: str, where: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"{entity_name} not found",
            code="NOT_FOUND",
            details={"entity_name": entity_name, "where": where or {}},
        )
        self.entity_name = entity_name
        self.where = where or {}
