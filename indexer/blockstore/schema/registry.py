"""
Entity Registry for the block store.

The EntityRegistry is the central authority for all entity types. It provides:
- Registration of entity classes under an explicit string type tag
- Lookup by class, tag or instance
- A stable registration order, used to order batched writes
- Schema fingerprinting and a freeze mechanism, applied by BlockDatabase.connect()

Invariants:
    - Type tags and table names are unique
    - Store state is keyed by type tag, never by class identity
    - Once frozen, no new types can be registered

How to change safely:
    - Register entity types parents-first; flush inserts in registration order
      and deletes in reverse order
    - Never rename a registered tag or table without a migration

Example:
    >>> registry = EntityRegistry()
    >>> registry.register(Account)
    >>> registry.resolve("Account").table
    'account'
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Callable, Dict, Iterator, Optional, Union

from ..errors import UnknownEntityError
from .entity import Entity, EntityMeta

logger = logging.getLogger(__name__)

EntityType = Union[type[Entity], str]

# Global registry instance
_global_registry: Optional[EntityRegistry] = None
_registry_lock = threading.Lock()


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a duplicate tag or table."""
    pass


class EntityRegistry:
    """Registry of entity types.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups are lock-free
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._by_name: Dict[str, EntityMeta] = {}
        self._by_class: Dict[type, EntityMeta] = {}
        self._tables: Dict[str, str] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(
        self,
        entity_class: type[Entity],
        name: Optional[str] = None,
        table: Optional[str] = None,
    ) -> EntityMeta:
        """Register an entity class.

        Args:
            entity_class: Entity subclass to register
            name: Type tag (defaults to the class name)
            table: Table name (defaults to the snake_case class name)

        Returns:
            The registered metadata

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If tag, table or class is already registered
        """
        meta = EntityMeta.from_class(entity_class, name=name, table=table)
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register entity '{meta.name}': registry is frozen"
                )
            if meta.name in self._by_name:
                raise DuplicateRegistrationError(f"Entity name '{meta.name}' already registered")
            if meta.table in self._tables:
                raise DuplicateRegistrationError(
                    f"Table '{meta.table}' already registered for entity '{self._tables[meta.table]}'"
                )
            if entity_class in self._by_class:
                raise DuplicateRegistrationError(
                    f"{entity_class.__name__} already registered as '{self._by_class[entity_class].name}'"
                )

            self._by_name[meta.name] = meta
            self._by_class[entity_class] = meta
            self._tables[meta.table] = meta.name
            logger.debug(f"Registered entity: {meta.name} (table={meta.table})")
            return meta

    def get(self, entity_type: EntityType) -> Optional[EntityMeta]:
        """Get entity metadata by class or type tag."""
        if isinstance(entity_type, str):
            return self._by_name.get(entity_type)
        return self._by_class.get(entity_type)

    def resolve(self, entity_type: EntityType) -> EntityMeta:
        """Get entity metadata, failing for unregistered types.

        Raises:
            UnknownEntityError: If the type is not registered
        """
        meta = self.get(entity_type)
        if meta is None:
            raise UnknownEntityError(entity_type)
        return meta

    def meta_for(self, entity: Entity) -> EntityMeta:
        """Get metadata for an entity instance.

        Raises:
            UnknownEntityError: If no class in the instance's MRO is registered
        """
        for klass in type(entity).__mro__:
            meta = self._by_class.get(klass)
            if meta is not None:
                return meta
        raise UnknownEntityError(type(entity))

    def position(self, name: str) -> int:
        """Registration index of a type tag."""
        return list(self._by_name).index(name)

    def entities(self) -> Iterator[EntityMeta]:
        """Iterate over registered entities in registration order."""
        yield from self._by_name.values()

    def __len__(self) -> int:
        return len(self._by_name)

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Entity registry frozen with {len(self._by_name)} entities, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation."""
        return {
            "entities": [
                {
                    "name": meta.name,
                    "table": meta.table,
                    "columns": list(meta.columns),
                    "json_columns": sorted(meta.json_columns),
                }
                for meta in self._by_name.values()
            ]
        }


def get_registry() -> EntityRegistry:
    """Get the global entity registry.

    Creates a new registry if none exists.
    """
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = EntityRegistry()
        return _global_registry


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None


def entity(
    name: Optional[str] = None,
    table: Optional[str] = None,
    registry: Optional[EntityRegistry] = None,
) -> Callable[[type[Entity]], type[Entity]]:
    """Class decorator registering an entity.

    Example:
        >>> @entity(table="transfers")
        ... class Transfer(Entity):
        ...     block_number: int
    """

    def decorator(entity_class: type[Entity]) -> type[Entity]:
        (registry or get_registry()).register(entity_class, name=name, table=table)
        return entity_class

    return decorator
