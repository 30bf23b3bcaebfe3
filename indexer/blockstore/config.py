"""
Configuration management for the block store.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The documented exactly-once guarantees hold only at SERIALIZABLE isolation
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change the default state schema: it names the live status table
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum

from psycopg.conninfo import make_conninfo

logger = logging.getLogger(__name__)

DEFAULT_STATE_SCHEMA = "squid_processor"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DatabaseBackend(Enum):
    """Supported relational backends."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"


class IsolationLevel(Enum):
    """Transaction isolation levels accepted by configuration."""

    SERIALIZABLE = "serializable"
    REPEATABLE_READ = "repeatable_read"
    READ_COMMITTED = "read_committed"


@dataclass(frozen=True)
class ConnectionConfig:
    """PostgreSQL connection configuration.

    Attributes:
        host: Database host
        port: Database port
        db_name: Database name
        user: Database user
        password: Database password
        connect_timeout: Seconds to wait for a new connection
        pool_min_size: Connections the pool keeps open
        pool_max_size: Upper bound on pooled connections
    """

    host: str = "localhost"
    port: int = 5432
    db_name: str = "postgres"
    user: str = "postgres"
    password: str = "postgres"
    connect_timeout: int = 10
    pool_min_size: int = 1
    pool_max_size: int = 10

    @classmethod
    def from_env(cls) -> ConnectionConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            db_name=os.getenv("DB_NAME", "postgres"),
            user=os.getenv("DB_USER", "postgres"),
            password=os.getenv("DB_PASS", "postgres"),
            connect_timeout=int(os.getenv("DB_CONNECT_TIMEOUT", "10")),
            pool_min_size=int(os.getenv("DB_POOL_MIN_SIZE", "1")),
            pool_max_size=int(os.getenv("DB_POOL_MAX_SIZE", "10")),
        )

    def conninfo(self) -> str:
        """Build a libpq connection string with every value quoted as needed."""
        return make_conninfo(
            host=self.host,
            port=self.port,
            dbname=self.db_name,
            user=self.user,
            password=self.password,
            connect_timeout=self.connect_timeout,
        )


@dataclass(frozen=True)
class SqliteConfig:
    """SQLite backend configuration.

    Attributes:
        path: Database file path
        wal_mode: SQLite WAL journal mode enabled
        busy_timeout_ms: How long a writer waits for the database lock
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    path: str = "./blockstore.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> SqliteConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("SQLITE_PATH", "./blockstore.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class StoreConfig:
    """Complete store configuration.

    Attributes:
        backend: Which relational backend to use
        state_schema: Schema holding the status (checkpoint) table
        isolation_level: Isolation level for block-range transactions
        batch_size: Maximum rows per batched lookup or write statement
        max_conflict_retries: Retries after a serialization conflict
        connection: PostgreSQL connection settings
        sqlite: SQLite settings
        observability: Logging settings
    """

    backend: DatabaseBackend = DatabaseBackend.SQLITE
    state_schema: str = DEFAULT_STATE_SCHEMA
    isolation_level: IsolationLevel = IsolationLevel.SERIALIZABLE
    batch_size: int = 1000
    max_conflict_retries: int = 3
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    sqlite: SqliteConfig = field(default_factory=SqliteConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load complete configuration from environment variables.

        Returns:
            StoreConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("DB_BACKEND", "sqlite").lower()
        try:
            backend = DatabaseBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid DB_BACKEND '{backend_str}'. Must be one of: sqlite, postgres")

        isolation_str = os.getenv("DB_ISOLATION_LEVEL", "serializable").lower()
        try:
            isolation_level = IsolationLevel(isolation_str)
        except ValueError:
            raise ValueError(
                f"Invalid DB_ISOLATION_LEVEL '{isolation_str}'. "
                "Must be one of: serializable, repeatable_read, read_committed"
            )

        config = cls(
            backend=backend,
            state_schema=os.getenv("DB_STATE_SCHEMA", DEFAULT_STATE_SCHEMA),
            isolation_level=isolation_level,
            batch_size=int(os.getenv("DB_BATCH_SIZE", "1000")),
            max_conflict_retries=int(os.getenv("DB_MAX_CONFLICT_RETRIES", "3")),
            connection=ConnectionConfig.from_env(),
            sqlite=SqliteConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not _IDENTIFIER_RE.match(self.state_schema):
            raise ValueError(f"DB_STATE_SCHEMA must be a plain SQL identifier, got '{self.state_schema}'")
        if self.batch_size < 1:
            raise ValueError("DB_BATCH_SIZE must be positive")
        if self.max_conflict_retries < 0:
            raise ValueError("DB_MAX_CONFLICT_RETRIES must not be negative")

        if self.backend == DatabaseBackend.SQLITE:
            if not self.sqlite.path:
                raise ValueError("SQLITE_PATH is required when DB_BACKEND=sqlite")
        elif self.backend == DatabaseBackend.POSTGRES:
            if not self.connection.host:
                raise ValueError("DB_HOST is required when DB_BACKEND=postgres")
            if not self.connection.db_name:
                raise ValueError("DB_NAME is required when DB_BACKEND=postgres")
            if self.connection.pool_min_size < 0:
                raise ValueError("DB_POOL_MIN_SIZE must not be negative")
            if self.connection.pool_max_size < max(self.connection.pool_min_size, 1):
                raise ValueError("DB_POOL_MAX_SIZE must be positive and at least DB_POOL_MIN_SIZE")

        if self.isolation_level != IsolationLevel.SERIALIZABLE:
            logger.warning(
                f"Isolation level is {self.isolation_level.value}: concurrent processors "
                "may both commit the same block range"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Store configuration loaded",
            extra={
                "backend": self.backend.value,
                "state_schema": self.state_schema,
                "isolation_level": self.isolation_level.value,
                "batch_size": self.batch_size,
                "db_host": self.connection.host
                if self.backend == DatabaseBackend.POSTGRES
                else None,
                "db_name": self.connection.db_name
                if self.backend == DatabaseBackend.POSTGRES
                else None,
                "sqlite_path": self.sqlite.path if self.backend == DatabaseBackend.SQLITE else None,
                "log_level": self.observability.log_level,
            },
        )
