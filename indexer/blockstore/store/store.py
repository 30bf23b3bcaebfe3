"""
Lazy, batching entity store handed to block handlers.

The Store is a restrictive front to the open transaction. Handlers can read
entities, stage upserts and removals, and defer lookups so that a whole
block range resolves its entities in a handful of batched queries instead of
one query per entity.

Per entity type (keyed by registered type tag) the store keeps:
- pending ids: requested via lazy_load, not yet resolved against the database
- overlay: id -> staged entity that wins over the database row
- removals: id -> entity staged for deletion
- snapshots: id -> field values of an entity loaded by persist_all(), so
  flush() writes it back only if the handler changed it

Entities resolved by persist_all() are tracked: mutating one is enough for
flush() to write it. get() hands out the staged or tracked object when there
is one. Rows read any other way are detached; stage changes to them with
lazy_upsert().

Invariants:
    - Staged writes reach the database only in flush()
    - get() sees staged writes immediately; find()/count() never do
    - One id is never staged for both upsert and removal
    - Merging keeps loaded fields the staged entity never set, and updates
      the staged object itself
    - A tracked entity is written only when its fields differ from the snapshot
    - Every operation except clear() fails once the transaction has ended

How to change safely:
    - Keep per-type state disjoint; flush() resolves types concurrently
    - Preserve insert/update order = registry order, delete order = reverse
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

from ..driver.base import Driver, DriverConnection
from ..errors import (
    AmbiguousWriteError,
    ClosedStoreError,
    EntityNotFoundError,
    MissingFactoryError,
)
from ..schema.entity import Entity, EntityMeta, assign_fields, merge_entity
from ..schema.registry import EntityRegistry, EntityType
from . import statements
from .tx import TransactionHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 1000


def split_into_batches(items: Iterable[T], max_batch_size: int) -> List[List[T]]:
    """Split items into consecutive lists of at most max_batch_size.

    Example:
        >>> split_into_batches([1, 2, 3, 4, 5], 2)
        [[1, 2], [3, 4], [5]]
    """
    if max_batch_size < 1:
        raise ValueError("max_batch_size must be positive")
    items = list(items)
    return [items[i:i + max_batch_size] for i in range(0, len(items), max_batch_size)]


@dataclass
class _TypeState:
    """Staged state for one entity type."""

    # dict used as an insertion-ordered set
    pending: Dict[str, None] = field(default_factory=dict)
    overlay: Dict[str, Entity] = field(default_factory=dict)
    # database existence of overlay ids, once looked up
    exists: Dict[str, bool] = field(default_factory=dict)
    removals: Dict[str, Entity] = field(default_factory=dict)
    # field values of overlay entities tracked from a load, not staged by the caller
    snapshots: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.pending or self.overlay or self.removals)

    def track(self, entity: Entity) -> None:
        self.overlay[entity.id] = entity
        self.exists[entity.id] = True
        self.snapshots[entity.id] = entity.model_dump()

    def untrack(self, entity_id: str) -> None:
        self.overlay.pop(entity_id, None)
        self.exists.pop(entity_id, None)
        self.snapshots.pop(entity_id, None)

    def needs_update(self, entity_id: str) -> bool:
        snapshot = self.snapshots.get(entity_id)
        return snapshot is None or self.overlay[entity_id].model_dump() != snapshot


class Store:
    """Restricted, lazy entity manager bound to one transaction.

    Example:
        >>> async def handler(store: Store) -> None:
        ...     store.lazy_load(Account, "alice", "bob")
        ...     store.lazy_upsert(Account, Account(id="alice", balance=10))
        ...     accounts = await store.persist_all(Account, create=lambda id: Account(id=id))
    """

    def __init__(
        self,
        tx: TransactionHandle,
        driver: Driver,
        registry: EntityRegistry,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._tx = tx
        self._driver = driver
        self._registry = registry
        self.batch_size = batch_size
        self._types: Dict[str, _TypeState] = {}

    def _check_open(self) -> None:
        if not self._tx.is_open:
            raise ClosedStoreError()

    def _connection(self) -> DriverConnection:
        self._check_open()
        return self._tx.connection

    def _state(self, meta: EntityMeta) -> _TypeState:
        state = self._types.get(meta.name)
        if state is None:
            state = _TypeState()
            self._types[meta.name] = state
        return state

    def _resolve(self, entity_type: EntityType) -> EntityMeta:
        self._check_open()
        return self._registry.resolve(entity_type)

    def lazy_load(self, entity_type: EntityType, *ids: str) -> Store:
        """Mark ids for batched resolution by persist_all()/flush()."""
        meta = self._resolve(entity_type)
        pending = self._state(meta).pending
        for entity_id in ids:
            pending[entity_id] = None
        return self

    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        """Get an entity by id, preferring the staged value.

        Returns None for ids staged for removal.
        """
        meta = self._resolve(entity_type)
        state = self._types.get(meta.name)
        if state is not None:
            if entity_id in state.overlay:
                return state.overlay[entity_id]
            if entity_id in state.removals:
                return None

        sql, params = statements.select_by_ids(self._driver, meta, [entity_id])
        rows = await self._connection().execute(sql, params)
        return meta.from_row(rows[0]) if rows else None

    async def get_or_create(
        self,
        entity_type: EntityType,
        entity_id: str,
        create: Callable[[str], Entity],
    ) -> Entity:
        """Get an entity, staging create(entity_id) as an upsert if absent."""
        found = await self.get(entity_type, entity_id)
        if found is not None:
            return found
        created = create(entity_id)
        self.lazy_upsert(entity_type, created)
        return created

    async def find(
        self,
        entity_type: EntityType,
        where: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        """Query the database; staged writes are not visible.

        Args:
            entity_type: Entity class or type tag
            where: column -> value; None matches NULL, a collection means IN
            order_by: Column name, prefixed with "-" for descending
            limit: Maximum rows to return
        """
        meta = self._resolve(entity_type)
        sql, params = statements.select_where(self._driver, meta, where, order_by, limit)
        rows = await self._connection().execute(sql, params)
        return [meta.from_row(row) for row in rows]

    async def find_one(
        self, entity_type: EntityType, where: Optional[Mapping[str, Any]] = None
    ) -> Optional[Entity]:
        found = await self.find(entity_type, where, limit=1)
        return found[0] if found else None

    async def find_one_or_fail(
        self, entity_type: EntityType, where: Optional[Mapping[str, Any]] = None
    ) -> Entity:
        found = await self.find_one(entity_type, where)
        if found is None:
            raise EntityNotFoundError(self._registry.resolve(entity_type).name, dict(where or {}))
        return found

    async def count(self, entity_type: EntityType, where: Optional[Mapping[str, Any]] = None) -> int:
        """Count database rows; staged writes are not counted."""
        meta = self._resolve(entity_type)
        sql, params = statements.count_where(self._driver, meta, where)
        rows = await self._connection().execute(sql, params)
        return int(rows[0]["cnt"])

    async def refresh(self, *entities: Entity) -> List[Optional[Entity]]:
        """Reload entities from the database, updating each instance in place.

        Staged values are not consulted. A refreshed entity that is tracked
        counts as unchanged afterwards.

        Returns:
            Per argument, the refreshed instance, or None if its row is gone

        Raises:
            UnknownEntityError: If an entity's class is not registered
        """
        self._check_open()
        metas = [self._registry.meta_for(e) for e in entities]
        conn = self._connection()

        ids_by_type: Dict[str, Dict[str, None]] = {}
        for meta, e in zip(metas, entities):
            ids_by_type.setdefault(meta.name, {})[e.id] = None

        fresh: Dict[str, Dict[str, Entity]] = {}
        for name, ids in ids_by_type.items():
            meta = self._registry.resolve(name)
            found = fresh.setdefault(name, {})
            for batch in split_into_batches(ids, self.batch_size):
                sql, params = statements.select_by_ids(self._driver, meta, batch)
                for row in await conn.execute(sql, params):
                    loaded = meta.from_row(row)
                    found[loaded.id] = loaded

        refreshed: List[Optional[Entity]] = []
        for meta, e in zip(metas, entities):
            loaded = fresh[meta.name].get(e.id)
            if loaded is None:
                refreshed.append(None)
                continue
            assign_fields(e, loaded, type(loaded).model_fields)
            state = self._types.get(meta.name)
            if state is not None and state.overlay.get(e.id) is e and e.id in state.snapshots:
                state.snapshots[e.id] = e.model_dump()
            refreshed.append(e)
        return refreshed

    def lazy_upsert(self, entity_type: EntityType, entity: Entity) -> Store:
        """Stage an entity for insert-or-update, replacing any staged value for its id.

        Raises:
            TypeError: If entity is not an instance of the registered class
            AmbiguousWriteError: If the id is staged for removal
        """
        meta = self._resolve(entity_type)
        if not isinstance(entity, meta.entity_class):
            raise TypeError(f"Expected {meta.entity_class.__name__}, got {type(entity).__name__}")

        state = self._state(meta)
        if entity.id in state.removals:
            raise AmbiguousWriteError(meta.name, entity.id, "removal")

        state.untrack(entity.id)
        # exists stays unknown so the new value is merged afresh
        state.overlay[entity.id] = entity
        return self

    def lazy_remove(self, *entities: Entity) -> Store:
        """Stage entities for deletion.

        An entity only tracked from persist_all() stops being tracked.

        Raises:
            AmbiguousWriteError: If an id is staged for upsert
        """
        self._check_open()
        staged = [(self._registry.meta_for(e), e) for e in entities]
        for meta, e in staged:
            state = self._types.get(meta.name)
            if state is not None and e.id in state.overlay and e.id not in state.snapshots:
                raise AmbiguousWriteError(meta.name, e.id, "upsert")
        for meta, e in staged:
            state = self._state(meta)
            state.untrack(e.id)
            state.removals[e.id] = e
        return self

    async def persist_all(
        self,
        entity_type: EntityType,
        create: Optional[Callable[[str], Entity]] = None,
    ) -> List[Entity]:
        """Resolve pending ids of one type in a single batched lookup.

        Staged values found in the database take the loaded values of the
        fields they never set and are written as updates; staged values that
        are not found become inserts. A pending id with neither a row nor a
        staged value is created with ``create`` when given.

        Every returned entity is tracked: later mutations are written by
        flush() without another lazy_upsert(). A loaded row that is never
        changed is not written back.

        Returns:
            The resolved entity for every pending id, in request order. A
            pending id staged for removal yields its loaded row, untracked,
            or nothing if the row does not exist.

        Raises:
            MissingFactoryError: If a pending id cannot be resolved
        """
        meta = self._resolve(entity_type)
        state = self._state(meta)

        lookup = list(state.pending)
        lookup.extend(
            i for i in state.overlay if i not in state.exists and i not in state.pending
        )
        if not lookup:
            return []

        conn = self._connection()
        loaded: Dict[str, Entity] = {}
        for batch in split_into_batches(lookup, self.batch_size):
            sql, params = statements.select_by_ids(self._driver, meta, batch)
            for row in await conn.execute(sql, params):
                found = meta.from_row(row)
                loaded[found.id] = found

        resolved: List[Entity] = []
        for entity_id in lookup:
            if entity_id in loaded:
                value = loaded[entity_id]
                if entity_id in state.overlay:
                    value = merge_entity(state.overlay[entity_id], value)
                    state.exists[entity_id] = True
                elif entity_id not in state.removals:
                    state.track(value)
            elif entity_id in state.overlay:
                value = state.overlay[entity_id]
                state.exists[entity_id] = False
            elif entity_id in state.removals:
                continue
            elif create is not None:
                value = create(entity_id)
                state.overlay[entity_id] = value
                state.exists[entity_id] = False
            else:
                raise MissingFactoryError(meta.name, entity_id)

            if entity_id in state.pending:
                resolved.append(value)

        state.pending.clear()
        return resolved

    async def flush(self) -> None:
        """Write all staged upserts and removals into the transaction.

        Any failure leaves the transaction to be rolled back by its owner.
        """
        self._check_open()
        to_resolve = [name for name, state in self._types.items() if state.pending or state.overlay]
        # Let every lookup finish before failing so none outlives the transaction
        results = await asyncio.gather(
            *(self.persist_all(name) for name in to_resolve), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        conn = self._connection()
        ordered = sorted(
            (name for name, state in self._types.items() if not state.is_empty()),
            key=self._registry.position,
        )
        inserted = updated = deleted = 0

        for name in ordered:
            meta = self._registry.resolve(name)
            state = self._types[name]
            inserts = [e for i, e in state.overlay.items() if not state.exists[i]]
            updates = [
                e for i, e in state.overlay.items() if state.exists[i] and state.needs_update(i)
            ]

            for batch in split_into_batches(inserts, self.batch_size):
                rows = [list(meta.to_row(e, self._driver.encode).values()) for e in batch]
                await conn.execute_many(statements.insert(self._driver, meta), rows)
            inserted += len(inserts)

            # An id-only entity has nothing to update
            if len(meta.columns) > 1:
                for batch in split_into_batches(updates, self.batch_size):
                    rows = []
                    for e in batch:
                        row = meta.to_row(e, self._driver.encode)
                        entity_id = row.pop("id")
                        rows.append([*row.values(), entity_id])
                    await conn.execute_many(statements.update(self._driver, meta), rows)
                updated += len(updates)

        for name in reversed(ordered):
            meta = self._registry.resolve(name)
            removals = list(self._types[name].removals)
            for batch in split_into_batches(removals, self.batch_size):
                sql, params = statements.delete_by_ids(self._driver, meta, batch)
                await conn.execute(sql, params)
            deleted += len(removals)

        logger.debug(
            "Flushed store",
            extra={"inserted": inserted, "updated": updated, "deleted": deleted},
        )
        self.clear()

    def clear(self) -> None:
        """Discard pending ids, staged upserts, tracked entities and staged removals."""
        self._types.clear()

    @property
    def stats(self) -> Dict[str, Dict[str, int]]:
        """Staged entry counts per entity type."""
        return {
            name: {
                "pending": len(state.pending),
                "upserts": len(state.overlay) - len(state.snapshots),
                "tracked": len(state.snapshots),
                "removals": len(state.removals),
            }
            for name, state in self._types.items()
        }
