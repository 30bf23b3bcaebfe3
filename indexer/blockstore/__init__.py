"""
Block Store - transactional persistence for block-processing results.

This package persists entities derived from a blockchain data stream into a
relational database, committing the "last processed height" checkpoint and
the entity writes for a block range in one transaction:
- A status table holds the durable high-water mark of committed height
- Handlers read and stage writes through a lazy, batching Store
- Every block range commits under serializable isolation, retried on conflict

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │   Handler   │────▶│      Store       │────▶│ TransactionHandle│
    │ (processor) │     │ (overlay, lazy)  │     │  (one native tx) │
    └─────────────┘     └──────────────────┘     └────────┬─────────┘
           ▲                                              │
           │            ┌──────────────────┐              ▼
           └────────────│  BlockDatabase   │     ┌──────────────────┐
                        │ (checkpoint,     │────▶│  Driver (SQLite/ │
                        │  retry)          │     │   PostgreSQL)    │
                        └──────────────────┘     └──────────────────┘

Invariants:
    - Checkpoint height never decreases
    - Checkpoint update and entity writes of a range commit together or not at all
    - Staged writes are deduplicated by entity id
    - Only serialization conflicts are retried, and only a bounded number of times

How to change safely:
    - Keep the checkpoint update inside the same transaction as the flush
    - Test retry behavior with injected conflicts on both commit and handler paths
    - Run the PostgreSQL integration suite before changing driver code

Version: see _version.py.
"""

from ._version import __version__
from .config import (
    ConnectionConfig,
    DatabaseBackend,
    IsolationLevel,
    ObservabilityConfig,
    SqliteConfig,
    StoreConfig,
)
from .errors import (
    AmbiguousWriteError,
    BlockStoreError,
    ClosedStoreError,
    ConnectionError,
    EntityNotFoundError,
    FlushError,
    MissingFactoryError,
    NoActiveTransactionError,
    SerializationConflictError,
    TransactionClosedError,
    UnknownEntityError,
)
from .observability import setup_logging
from .schema import Entity, EntityRegistry, entity, get_registry
from .store import BlockDatabase, Store, TransactionHandle, TxState, split_into_batches

__all__ = [
    "__version__",
    # Configuration
    "StoreConfig",
    "ConnectionConfig",
    "SqliteConfig",
    "ObservabilityConfig",
    "DatabaseBackend",
    "IsolationLevel",
    "setup_logging",
    # Entities
    "Entity",
    "EntityRegistry",
    "entity",
    "get_registry",
    # Transactions
    "BlockDatabase",
    "Store",
    "TransactionHandle",
    "TxState",
    "split_into_batches",
    # Errors
    "BlockStoreError",
    "ConnectionError",
    "SerializationConflictError",
    "TransactionClosedError",
    "NoActiveTransactionError",
    "ClosedStoreError",
    "FlushError",
    "MissingFactoryError",
    "AmbiguousWriteError",
    "UnknownEntityError",
    "EntityNotFoundError",
]
