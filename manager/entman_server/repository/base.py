"""
Generic entity repository for EntMan.

A single Repository algorithm is instantiated once per entity type. It owns
id assignment, audit stamping and composite-key projection; the document
store owns uniqueness.

Invariants:
    - Ids are uuid4 text, assigned on create, never changed by update
    - created_at / created_by are set on create and carried through updates
    - updated_at never moves backward, even if the wall clock does
    - Composite-key collisions are detected by the store's unique index,
      so two concurrent creates of the same key yield exactly one success
    - Updates are full replacements, last writer wins

How to change safely:
    - Entity-specific behaviour belongs in EntityTypeDef, not subclasses
    - Keep delete() idempotent: a missing id returns False, never raises
"""

from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from ..entities import Entity, EntityTypeDef, normalize_configuration
from ..store import DocumentStore, DuplicateKeyError, ReferencedDocumentError

if TYPE_CHECKING:
    from ..integrity import ReferentialIntegrityService

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Entity)


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class NotFoundError(RepositoryError):
    """The entity to update does not exist."""

    def __init__(self, type_name: str, entity_id: str) -> None:
        super().__init__(f"{type_name} {entity_id} not found")
        self.type_name = type_name
        self.entity_id = entity_id


def _now_ms() -> int:
    return int(time.time() * 1000)


class Repository(Generic[T]):
    """Persistence for one entity type.

    Example:
        >>> sources = Repository(store, SOURCE)
        >>> created = await sources.create(SourceEntity(address="a", version="1.0"))
        >>> (await sources.get_by_composite_key("a_1.0")).id == created.id
        True
    """

    def __init__(
        self,
        store: DocumentStore,
        type_def: EntityTypeDef,
        integrity: ReferentialIntegrityService | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            store: Document store holding the type's collection
            type_def: Entity type definition (class, collection, key projection)
            integrity: When set, delete() re-counts dependents inside the
                delete transaction
            clock: Millisecond clock, replaceable in tests
        """
        self.store = store
        self.type_def = type_def
        self.integrity = integrity
        self._clock = clock or _now_ms

    @property
    def type_name(self) -> str:
        return self.type_def.name

    @property
    def collection(self) -> str:
        return self.type_def.collection

    def composite_key(self, entity: Entity) -> str:
        return self.type_def.composite_key(entity)

    def _materialize(self, body: dict[str, Any]) -> T:
        return self.type_def.from_dict(body)  # type: ignore[return-value]

    async def create(self, entity: T, created_by: str = "") -> T:
        """Persist a new entity.

        Any id on the input is ignored; a fresh one is assigned.

        Returns:
            The stored entity with id and created_* populated

        Raises:
            DuplicateKeyError: If another entity already has the composite key
            InvalidConfigurationError: If configuration holds unsupported values
        """
        now = self._clock()
        stored = dataclasses.replace(
            entity,
            id=str(uuid.uuid4()),
            configuration=normalize_configuration(entity.configuration),
            created_at=now,
            created_by=created_by,
            updated_at=None,
            updated_by="",
        )
        key = self.composite_key(stored)

        await self.store.insert(self.collection, stored.id, key, stored.to_dict(), created_at=now)

        logger.info(
            f"Created {self.type_name} {stored.id}",
            extra={"entity_type": self.type_name, "entity_id": stored.id, "composite_key": key},
        )
        return stored

    async def get_by_id(self, entity_id: str) -> T | None:
        doc = await self.store.get(self.collection, entity_id)
        return self._materialize(doc.body) if doc else None

    async def get_by_composite_key(self, composite_key: str) -> T | None:
        doc = await self.store.get_by_key(self.collection, composite_key)
        return self._materialize(doc.body) if doc else None

    async def exists(self, entity_id: str) -> bool:
        return await self.store.get(self.collection, entity_id) is not None

    async def update(self, entity: T, updated_by: str = "") -> T:
        """Replace an existing entity.

        created_at / created_by come from the stored document, whatever the
        input carries.

        Raises:
            NotFoundError: If entity.id does not exist
            DuplicateKeyError: If a different entity already has the new key
            InvalidConfigurationError: If configuration holds unsupported values
        """
        current_doc = await self.store.get(self.collection, entity.id)
        if current_doc is None:
            raise NotFoundError(self.type_name, entity.id)
        current = self._materialize(current_doc.body)

        stored = dataclasses.replace(
            entity,
            configuration=normalize_configuration(entity.configuration),
            created_at=current.created_at,
            created_by=current.created_by,
            updated_at=None,
            updated_by=updated_by,
        )
        key = self.composite_key(stored)

        # The store stamps updated_at inside the write transaction.
        replaced = await self.store.replace(
            self.collection,
            stored.id,
            key,
            stored.to_dict(),
            updated_at=self._clock(),
            stamp_field="updated_at",
        )
        if replaced is None:
            # Deleted between the read and the write.
            raise NotFoundError(self.type_name, entity.id)
        stored.updated_at = replaced.updated_at

        logger.info(
            f"Updated {self.type_name} {stored.id}",
            extra={"entity_type": self.type_name, "entity_id": stored.id, "composite_key": key},
        )
        return stored

    async def delete(self, entity_id: str) -> bool:
        """Physically delete an entity.

        Returns:
            True if a document was removed, False if none existed

        Raises:
            ReferentialIntegrityViolation: If an integrity service is attached
                and dependents still reference the entity at delete time
        """
        guards = self.integrity.guard_edges() if self.integrity else []
        try:
            deleted = await self.store.delete(self.collection, entity_id, guards=guards)
        except ReferencedDocumentError as e:
            raise self.integrity.violation_from_counts(entity_id, e.counts) from e

        if deleted:
            logger.info(
                f"Deleted {self.type_name} {entity_id}",
                extra={"entity_type": self.type_name, "entity_id": entity_id},
            )
        return deleted

    async def list(self, limit: int | None = None, offset: int = 0) -> list[T]:
        """List entities in creation order."""
        docs = await self.store.list(self.collection, limit=limit, offset=offset)
        return [self._materialize(doc.body) for doc in docs]

    async def count(self) -> int:
        return await self.store.count(self.collection)

    async def find_by_field(self, field_name: str, value: Any) -> list[T]:
        """Find entities whose field equals value (list fields match on membership).

        Raises:
            ValueError: If the type has no such field
        """
        if not self.type_def.has_field(field_name):
            raise ValueError(f"{self.type_name} has no field '{field_name}'")
        docs = await self.store.find_where(self.collection, field_name, value)
        return [self._materialize(doc.body) for doc in docs]

