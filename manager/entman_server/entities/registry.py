"""
Entity type registry for EntMan.

The EntityTypeRegistry is the central authority for which entity types exist,
which collection each one lives in, and how its composite key is projected.
It provides:
- Registration of entity type definitions
- Lookup by type name or collection name
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Type names and collection names are globally unique
    - Every key field named by a type exists on its entity class
    - The composite-key projection is deterministic

How to change safely:
    - Register all types before calling freeze()
    - Changing a type's key fields changes which documents collide;
      migrate stored composite keys before deploying
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .types import Entity

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "_"

_COLLECTION_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""

    pass


class DuplicateRegistrationError(Exception):
    """Raised when a type name or collection is registered twice."""

    pass


class UnknownEntityTypeError(KeyError):
    """Raised when looking up a type that was never registered."""

    pass


@dataclass(frozen=True)
class EntityTypeDef:
    """Definition of one entity type.

    Attributes:
        name: Type name used in messages and reference inventories ("Source")
        collection: Store collection holding documents of this type ("sources")
        entity_class: Dataclass used to materialize documents
        key_fields: Fields joined with "_" to form the composite key
        key_projection: Optional custom projection overriding key_fields

    Example:
        >>> Source = EntityTypeDef(
        ...     name="Source",
        ...     collection="sources",
        ...     entity_class=SourceEntity,
        ...     key_fields=("address", "version"),
        ... )
        >>> Source.composite_key(SourceEntity(address="a", version="1.0"))
        'a_1.0'
    """

    name: str
    collection: str
    entity_class: type[Entity]
    key_fields: tuple[str, ...] = ("version", "name")
    key_projection: Callable[[Entity], str] | None = None

    def __post_init__(self) -> None:
        """Validate type definition."""
        if not self.name:
            raise ValueError("Entity type name cannot be empty")
        if not _COLLECTION_RE.match(self.collection):
            raise ValueError(f"Invalid collection name '{self.collection}'")
        if self.key_projection is None and not self.key_fields:
            raise ValueError(f"Entity type '{self.name}' needs key_fields or key_projection")
        known = set(self.entity_class.field_names())
        for key_field in self.key_fields:
            if key_field not in known:
                raise ValueError(
                    f"Key field '{key_field}' is not a field of {self.entity_class.__name__}"
                )

    def composite_key(self, entity: Entity) -> str:
        """Project an entity onto its composite key string."""
        if self.key_projection is not None:
            return self.key_projection(entity)
        return KEY_SEPARATOR.join(str(getattr(entity, f)) for f in self.key_fields)

    def has_field(self, field_name: str) -> bool:
        """Whether documents of this type carry the given field."""
        return field_name in self.entity_class.field_names()

    def from_dict(self, data: dict[str, Any]) -> Entity:
        """Materialize a stored document body as this type's entity class."""
        return self.entity_class.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation (projection excluded)."""
        return {
            "name": self.name,
            "collection": self.collection,
            "entity_class": self.entity_class.__name__,
            "key_fields": list(self.key_fields),
        }


class EntityTypeRegistry:
    """Registry of all entity type definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Example:
        >>> registry = EntityTypeRegistry()
        >>> registry.register(Source)
        >>> registry.freeze()
        >>> registry.get("Source").collection
        'sources'
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._by_name: dict[str, EntityTypeDef] = {}
        self._by_collection: dict[str, EntityTypeDef] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    def register(self, type_def: EntityTypeDef) -> None:
        """Register an entity type definition.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If name or collection is taken
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register entity type '{type_def.name}': registry is frozen"
                )
            if type_def.name in self._by_name:
                raise DuplicateRegistrationError(
                    f"Entity type '{type_def.name}' already registered"
                )
            if type_def.collection in self._by_collection:
                existing = self._by_collection[type_def.collection]
                raise DuplicateRegistrationError(
                    f"Collection '{type_def.collection}' already used by '{existing.name}'"
                )

            self._by_name[type_def.name] = type_def
            self._by_collection[type_def.collection] = type_def
            logger.debug(
                f"Registered entity type: {type_def.name} (collection={type_def.collection})"
            )

    def get(self, name: str) -> EntityTypeDef:
        """Get a type by name.

        Raises:
            UnknownEntityTypeError: If no such type is registered
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownEntityTypeError(f"Unknown entity type '{name}'") from None

    def find(self, name: str) -> EntityTypeDef | None:
        """Get a type by name, or None."""
        return self._by_name.get(name)

    def get_by_collection(self, collection: str) -> EntityTypeDef | None:
        """Get a type by its collection name."""
        return self._by_collection.get(collection)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[EntityTypeDef]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def freeze(self) -> None:
        """Freeze the registry.

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            self._frozen = True
            logger.info(f"Entity type registry frozen with {len(self._by_name)} types")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation, sorted by name."""
        return {
            "entity_types": [self._by_name[name].to_dict() for name in sorted(self._by_name)]
        }
