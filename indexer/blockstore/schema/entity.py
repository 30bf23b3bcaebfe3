"""
Entity base model and table metadata.

Entities are pydantic models with a stable string ``id``. Field assignment is
validated, and pydantic tracks which fields were explicitly set. The store
relies on that to merge a partially-populated staged entity into the row
loaded from the database.

Invariants:
    - Every entity has an ``id: str`` primary key column
    - Columns are the model's field names, in declaration order
    - Fields annotated as dict or list are stored as JSON
"""

from __future__ import annotations

import json
import re
import types
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


class Entity(BaseModel):
    """Base class for all persisted entities.

    Example:
        >>> class Account(Entity):
        ...     balance: int = 0
        >>> acc = Account(id="alice")
        >>> acc.balance = 10
        >>> sorted(acc.model_fields_set)
        ['balance', 'id']
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: str


def snake_case(name: str) -> str:
    """Convert a class name to an underscore table name.

    Example:
        >>> snake_case("HistoricalBalance")
        'historical_balance'
    """
    return _CAMEL_BOUNDARY_RE.sub("_", name).lower()


def _is_json_annotation(annotation: Any) -> bool:
    if annotation in (dict, list):
        return True
    origin = get_origin(annotation)
    if origin in (dict, list):
        return True
    if origin is Union or origin is types.UnionType:
        return any(
            _is_json_annotation(arg) for arg in get_args(annotation) if arg is not type(None)
        )
    return False


@dataclass(frozen=True)
class EntityMeta:
    """Registered metadata for one entity type.

    Attributes:
        name: Type tag; the key for all per-type store state
        entity_class: The pydantic model class
        table: Table name
        columns: Column names, ``id`` first
        json_columns: Columns holding JSON documents
    """

    name: str
    entity_class: type[Entity]
    table: str
    columns: tuple[str, ...]
    json_columns: frozenset[str]

    @classmethod
    def from_class(
        cls,
        entity_class: type[Entity],
        name: str | None = None,
        table: str | None = None,
    ) -> EntityMeta:
        """Build metadata from an entity class.

        Raises:
            TypeError: If the class is not an Entity subclass
        """
        if not (isinstance(entity_class, type) and issubclass(entity_class, Entity)):
            raise TypeError(f"{entity_class!r} is not an Entity subclass")

        fields = entity_class.model_fields
        columns = ("id",) + tuple(n for n in fields if n != "id")
        json_columns = frozenset(
            n for n, info in fields.items() if _is_json_annotation(info.annotation)
        )
        return cls(
            name=name or entity_class.__name__,
            entity_class=entity_class,
            table=table or snake_case(entity_class.__name__),
            columns=columns,
            json_columns=json_columns,
        )

    def check_column(self, column: str) -> str:
        """Return column if it belongs to this entity.

        Raises:
            ValueError: For unknown columns
        """
        if column not in self.columns:
            raise ValueError(f"Unknown column '{column}' for entity {self.name}")
        return column

    def to_row(self, entity: Entity, encode: Callable[[Any], Any]) -> dict[str, Any]:
        """Convert an entity to column values using a driver encoder."""
        return {column: encode(getattr(entity, column)) for column in self.columns}

    def from_row(self, row: Mapping[str, Any]) -> Entity:
        """Build an entity from a database row."""
        values: dict[str, Any] = {}
        for column in self.columns:
            if column not in row:
                continue
            value = row[column]
            if column in self.json_columns and isinstance(value, str):
                value = json.loads(value)
            values[column] = value
        return self.entity_class.model_validate(values)


def assign_fields(target: Entity, source: Entity, names: Iterable[str]) -> Entity:
    """Copy the named field values from source onto target, in place."""
    for name in names:
        setattr(target, name, getattr(source, name))
    return target


def merge_entity(overlay: Entity, loaded: Entity) -> Entity:
    """Fill the fields overlay never set explicitly with the loaded values.

    The overlay object is updated in place and returned, so references held
    by the caller keep seeing the merged entity.

    Example:
        >>> staged = Thing(id="a", x=9)
        >>> merge_entity(staged, Thing(id="a", x=1, y=2)) is staged
        True
        >>> (staged.x, staged.y)
        (9, 2)
    """
    unset = [name for name in type(overlay).model_fields if name not in overlay.model_fields_set]
    return assign_fields(overlay, loaded, unset)
