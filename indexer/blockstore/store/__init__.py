"""
Store module for the block store.

This module provides the transactional write path:
- BlockDatabase: checkpoint table, block-range transactions, conflict retry
- Store: lazy, batching entity manager handed to block handlers
- TransactionHandle: explicit commit/rollback over one native transaction

Invariants:
    - A Store is only usable while its transaction is open
    - The checkpoint and a range's entity writes commit atomically

How to change safely:
    - Run the integration suite with injected conflicts after any change
"""

from .database import BlockDatabase, Handler
from .store import DEFAULT_BATCH_SIZE, Store, split_into_batches
from .tx import TransactionHandle, TxState

__all__ = [
    # Transaction manager
    "BlockDatabase",
    "Handler",
    # Store
    "Store",
    "split_into_batches",
    "DEFAULT_BATCH_SIZE",
    # Transactions
    "TransactionHandle",
    "TxState",
]
