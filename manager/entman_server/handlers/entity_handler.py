"""
Generic command handler for entity mutations.

EntityCommandHandler is the glue a transport adapter (message bus consumer,
HTTP route, ...) calls for one entity type. It orders the work for each
command:

    integrity check (referenced types) -> repository -> event -> reply

and converts typed failures into CommandReply errors.

Invariants:
    - A reply is produced for every command; validation failures never raise
    - Store failures (StoreUnavailableError) propagate to the adapter
    - Events are published only after the write committed
    - A publish failure or timeout is logged and never fails the command

How to change safely:
    - New error kinds must be added to ErrorKind and handled by adapters
    - Keep the integrity check before the repository call; the repository
      re-check at delete time is a second line, not a replacement
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..entities import Entity, InvalidConfigurationError
from ..events import (
    EntityCreatedEvent,
    EntityDeletedEvent,
    EntityEvent,
    EntityUpdatedEvent,
    EventPublisher,
)
from ..integrity import (
    ReferentialIntegrityService,
    ReferentialIntegrityViolation,
    ValidationResult,
)
from ..repository import DuplicateKeyError, NotFoundError, Repository

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Failure categories carried in replies."""

    DUPLICATE_KEY = "DUPLICATE_KEY"
    NOT_FOUND = "NOT_FOUND"
    REFERENTIAL_INTEGRITY_VIOLATION = "REFERENTIAL_INTEGRITY_VIOLATION"
    INVALID_REQUEST = "INVALID_REQUEST"


@dataclass
class CommandError:
    """Typed failure returned to the command sender."""

    kind: ErrorKind
    message: str
    references: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "references": self.references}


@dataclass
class CommandReply:
    """Reply to one command.

    Attributes:
        success: Whether the command succeeded
        entity: Stored entity for create/update/get
        deleted: For delete, whether a document was removed
        error: Failure details when success is False
    """

    success: bool
    entity: Entity | None = None
    deleted: bool | None = None
    error: CommandError | None = None

    @classmethod
    def ok(cls, entity: Entity | None = None, deleted: bool | None = None) -> CommandReply:
        return cls(success=True, entity=entity, deleted=deleted)

    @classmethod
    def fail(
        cls, kind: ErrorKind, message: str, references: dict[str, Any] | None = None
    ) -> CommandReply:
        return cls(success=False, error=CommandError(kind, message, references))

    @classmethod
    def integrity_violation(cls, result: ValidationResult) -> CommandReply:
        return cls.fail(
            ErrorKind.REFERENTIAL_INTEGRITY_VIOLATION,
            result.error_message or "Referential integrity violation",
            result.references.to_dict() if result.references else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "entity": self.entity.to_dict() if self.entity else None,
            "deleted": self.deleted,
            "error": self.error.to_dict() if self.error else None,
        }


class EntityCommandHandler:
    """Command orchestration for one entity type.

    Example:
        >>> handler = EntityCommandHandler(protocols, publisher, integrity=protocol_integrity)
        >>> reply = await handler.delete(protocol_id, actor="alice")
        >>> reply.error.kind
        <ErrorKind.REFERENTIAL_INTEGRITY_VIOLATION: 'REFERENTIAL_INTEGRITY_VIOLATION'>
    """

    def __init__(
        self,
        repository: Repository,
        publisher: EventPublisher | None = None,
        integrity: ReferentialIntegrityService | None = None,
        publish_timeout_ms: int = 5000,
        block_identity_change: bool = True,
    ) -> None:
        """Initialize the handler.

        Args:
            repository: Repository of the handled entity type
            publisher: Event publisher; None disables events
            integrity: Integrity service when the type is referenced by others
            publish_timeout_ms: Upper bound on one publish attempt
            block_identity_change: Validate composite-key changes of
                referenced entities before updating
        """
        self.repository = repository
        self.publisher = publisher
        self.integrity = integrity
        self.publish_timeout_ms = publish_timeout_ms
        self.block_identity_change = block_identity_change

    @property
    def type_name(self) -> str:
        return self.repository.type_name

    async def create(self, entity: Entity, actor: str = "") -> CommandReply:
        try:
            stored = await self.repository.create(entity, created_by=actor)
        except DuplicateKeyError as e:
            return CommandReply.fail(ErrorKind.DUPLICATE_KEY, str(e))
        except InvalidConfigurationError as e:
            return CommandReply.fail(ErrorKind.INVALID_REQUEST, str(e))

        await self._publish(
            EntityCreatedEvent(
                entity_type=self.type_name,
                entity_id=stored.id,
                actor=actor,
                payload=stored.to_dict(),
            )
        )
        return CommandReply.ok(entity=stored)

    async def update(self, entity: Entity, actor: str = "") -> CommandReply:
        """Replace an entity.

        For a referenced type, a change of composite key is an identity
        change and is rejected while dependents exist.
        """
        if not entity.id:
            return CommandReply.fail(ErrorKind.INVALID_REQUEST, "Update requires an entity id")

        if self.integrity is not None and self.block_identity_change:
            current = await self.repository.get_by_id(entity.id)
            if current is None:
                return CommandReply.fail(
                    ErrorKind.NOT_FOUND, f"{self.type_name} {entity.id} not found"
                )
            if self.repository.composite_key(current) != self.repository.composite_key(entity):
                result = await self.integrity.validate_identity_change(current.id, None)
                if not result.is_valid:
                    return CommandReply.integrity_violation(result)

        try:
            stored = await self.repository.update(entity, updated_by=actor)
        except NotFoundError as e:
            return CommandReply.fail(ErrorKind.NOT_FOUND, str(e))
        except DuplicateKeyError as e:
            return CommandReply.fail(ErrorKind.DUPLICATE_KEY, str(e))
        except InvalidConfigurationError as e:
            return CommandReply.fail(ErrorKind.INVALID_REQUEST, str(e))

        await self._publish(
            EntityUpdatedEvent(
                entity_type=self.type_name,
                entity_id=stored.id,
                actor=actor,
                payload=stored.to_dict(),
            )
        )
        return CommandReply.ok(entity=stored)

    async def delete(self, entity_id: str, actor: str = "") -> CommandReply:
        """Delete an entity; deleting a missing id succeeds with deleted=False."""
        if not entity_id:
            return CommandReply.fail(ErrorKind.INVALID_REQUEST, "Delete requires an entity id")

        if self.integrity is not None:
            result = await self.integrity.validate_deletion(entity_id)
            if not result.is_valid:
                return CommandReply.integrity_violation(result)

        try:
            deleted = await self.repository.delete(entity_id)
        except ReferentialIntegrityViolation as e:
            return CommandReply.integrity_violation(e.result)

        if deleted:
            await self._publish(
                EntityDeletedEvent(entity_type=self.type_name, entity_id=entity_id, actor=actor)
            )
        return CommandReply.ok(deleted=deleted)

    async def get(
        self, entity_id: str | None = None, composite_key: str | None = None
    ) -> CommandReply:
        """Look up by id or by composite key (exactly one must be given)."""
        if (entity_id is None) == (composite_key is None):
            return CommandReply.fail(
                ErrorKind.INVALID_REQUEST, "Provide exactly one of id or composite key"
            )

        if entity_id is not None:
            entity = await self.repository.get_by_id(entity_id)
            wanted = entity_id
        else:
            entity = await self.repository.get_by_composite_key(composite_key)
            wanted = composite_key

        if entity is None:
            return CommandReply.fail(ErrorKind.NOT_FOUND, f"{self.type_name} {wanted} not found")
        return CommandReply.ok(entity=entity)

    async def _publish(self, event: EntityEvent) -> None:
        if self.publisher is None:
            return
        try:
            await asyncio.wait_for(
                self.publisher.publish(event), timeout=self.publish_timeout_ms / 1000.0
            )
        except Exception as e:
            logger.warning(
                f"Failed to publish {event.event_type} for {event.entity_type} "
                f"{event.entity_id}: {e!r}",
                extra={"event_type": event.event_type, "entity_id": event.entity_id},
            )
