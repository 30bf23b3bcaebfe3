"""
Relational driver abstraction for the block store.

This module provides a pluggable backend interface supporting:
- SQLite (single-file, writers serialized by BEGIN IMMEDIATE)
- PostgreSQL via psycopg (recommended for production)

Invariants:
    - begin() returns a connection whose native transaction is already open
    - Conflicts are reported as SerializationConflictError by every backend
    - Failed statements never leave a partially committed transaction

How to change safely:
    - New backends must implement the Driver and DriverConnection protocols
    - Verify conflict translation against a real concurrent writer
"""

from .base import Driver, DriverConnection, Row, create_driver, quote_identifier
from .postgres import PostgresConnection, PostgresDriver
from .sqlite import SqliteConnection, SqliteDriver

__all__ = [
    # Protocol and types
    "Driver",
    "DriverConnection",
    "Row",
    "quote_identifier",
    # Factory
    "create_driver",
    # Implementations
    "SqliteDriver",
    "SqliteConnection",
    "PostgresDriver",
    "PostgresConnection",
]
