"""
Schema module for the block store.

This module provides entity declarations and their registry:
- Entity base model (pydantic) with a string ``id`` primary key
- EntityMeta describing the table and columns of an entity type
- EntityRegistry mapping explicit type tags to entity metadata

Invariants:
    - Type tags are unique and stable per logical entity kind
    - Per-type store state is keyed by tag, never by class identity

How to change safely:
    - Add new entities with new tags and tables
    - Keep field names in sync with the table columns they map to
"""

from .entity import Entity, EntityMeta, assign_fields, merge_entity, snake_case
from .registry import (
    DuplicateRegistrationError,
    EntityRegistry,
    EntityType,
    RegistryFrozenError,
    entity,
    get_registry,
    reset_registry,
)

__all__ = [
    # Entities
    "Entity",
    "EntityMeta",
    "assign_fields",
    "merge_entity",
    "snake_case",
    # Registry
    "EntityRegistry",
    "EntityType",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    "entity",
    "get_registry",
    "reset_registry",
]
