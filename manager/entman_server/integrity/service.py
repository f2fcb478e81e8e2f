"""
Referential integrity service for EntMan.

One ReferentialIntegrityService exists per referenced entity type. Before a
referenced entity is deleted, or its identity-bearing fields change, the
service counts live dependents in every collection the reference graph
lists for that type.

Invariants:
    - Counting is read-only; the service never mutates the store
    - Counts for several edges from the same dependent type are summed
      under that type name
    - Inventory order follows reference graph registration order
    - A result is invalid iff at least one dependent count is non-zero
    - Store failures during counting propagate to the caller

How to change safely:
    - New dependents are edges in integrity/graph.py, not code here
    - guard_edges() must name the same edges get_reference_inventory()
      counts, or the repository's in-transaction re-check drifts from
      the validation result
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..config import IntegrityConfig
from ..entities import EntityTypeRegistry
from ..store import DocumentStore
from .graph import ReferenceEdge, ReferenceGraph

logger = logging.getLogger(__name__)


@dataclass
class ReferenceInfo:
    """Dependent counts for one referenced entity.

    Attributes:
        referenced_type: Type name of the referenced entity
        referenced_id: Id of the referenced entity
        counts: Dependent type name -> number of referencing documents,
            non-zero entries only, in registry order
    """

    referenced_type: str
    referenced_id: str
    counts: dict[str, int] = field(default_factory=dict)

    def add(self, dependent_type: str, count: int) -> None:
        """Add count to dependent_type, keeping zero counts out of the mapping."""
        if count:
            self.counts[dependent_type] = self.counts.get(dependent_type, 0) + count

    def total(self) -> int:
        """Sum of all dependent counts."""
        return sum(self.counts.values())

    @property
    def has_references(self) -> bool:
        return self.total() > 0

    def describe(self) -> list[str]:
        """Human-readable entries for every non-zero dependent type.

        Example:
            >>> ReferenceInfo("Protocol", "p1", {"Source": 2}).describe()
            ['Source (2 records)']
        """
        return [f"{name} ({count} records)" for name, count in self.counts.items() if count]

    def to_dict(self) -> dict[str, Any]:
        return {
            "referenced_type": self.referenced_type,
            "referenced_id": self.referenced_id,
            "counts": dict(self.counts),
            "total": self.total(),
        }


@dataclass
class ValidationResult:
    """Outcome of a deletion or identity-change validation.

    Attributes:
        is_valid: Whether the operation may proceed
        error_message: Explanation when invalid
        references: Inventory the decision was based on (None when skipped)
        duration_ms: Time spent counting
    """

    is_valid: bool
    error_message: str | None = None
    references: ReferenceInfo | None = None
    duration_ms: float = 0.0

    @classmethod
    def valid(
        cls, references: ReferenceInfo | None = None, duration_ms: float = 0.0
    ) -> ValidationResult:
        return cls(is_valid=True, references=references, duration_ms=duration_ms)

    @classmethod
    def invalid(
        cls, message: str, references: ReferenceInfo, duration_ms: float = 0.0
    ) -> ValidationResult:
        return cls(
            is_valid=False,
            error_message=message,
            references=references,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "error_message": self.error_message,
            "references": self.references.to_dict() if self.references else None,
            "duration_ms": self.duration_ms,
        }


class ReferentialIntegrityViolation(Exception):
    """A delete or identity change was refused because dependents exist.

    Attributes:
        result: The invalid ValidationResult with the reference inventory
    """

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(result.error_message or "Referential integrity violation")
        self.result = result

    @property
    def references(self) -> ReferenceInfo | None:
        return self.result.references


class ReferentialIntegrityService:
    """Counts dependents of one referenced entity type.

    Thread safety:
        Stateless apart from immutable configuration; safe to share
        across concurrent command tasks.

    Example:
        >>> service = ReferentialIntegrityService(store, graph, registry, "Protocol")
        >>> result = await service.validate_deletion(protocol_id)
        >>> if not result.is_valid:
        ...     print(result.error_message)
    """

    def __init__(
        self,
        store: DocumentStore,
        graph: ReferenceGraph,
        entity_registry: EntityTypeRegistry,
        referenced_type: str,
        config: IntegrityConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or IntegrityConfig()
        self.referenced_type = entity_registry.get(referenced_type).name

        self._edges: list[tuple[ReferenceEdge, str]] = []
        for edge in graph.edges_for(referenced_type):
            if edge.label in self.config.skip_edges:
                logger.info(f"Skipping reference edge {edge.label} for {referenced_type}")
                continue
            collection = entity_registry.get(edge.dependent_type).collection
            self._edges.append((edge, collection))

    @property
    def edges(self) -> list[ReferenceEdge]:
        """Edges this service counts, after skip configuration."""
        return [edge for edge, _ in self._edges]

    def guard_edges(self) -> list[tuple[str, str]]:
        """(collection, field) pairs for the store's guarded delete.

        Empty when validation is disabled.
        """
        if not self.config.enabled:
            return []
        return [(collection, edge.field) for edge, collection in self._edges]

    def references_from_counts(
        self, referenced_id: str, counts: dict[tuple[str, str], int]
    ) -> ReferenceInfo:
        """Build a ReferenceInfo from counts keyed by (collection, field)."""
        info = ReferenceInfo(self.referenced_type, referenced_id)
        for edge, collection in self._edges:
            info.add(edge.dependent_type, counts.get((collection, edge.field), 0))
        return info

    async def get_reference_inventory(self, referenced_id: str) -> ReferenceInfo:
        """Count every dependent referencing referenced_id.

        Raises:
            StoreUnavailableError: If the store fails while counting
        """
        try:
            if self.config.parallel:
                counts = await asyncio.gather(
                    *(
                        self.store.count_where(collection, edge.field, referenced_id)
                        for edge, collection in self._edges
                    )
                )
            else:
                counts = []
                for edge, collection in self._edges:
                    counts.append(
                        await self.store.count_where(collection, edge.field, referenced_id)
                    )
        except Exception as e:
            logger.error(
                f"Reference counting failed for {self.referenced_type} {referenced_id}: {e}",
                extra={"referenced_type": self.referenced_type, "referenced_id": referenced_id},
            )
            raise

        info = ReferenceInfo(self.referenced_type, referenced_id)
        for (edge, _), count in zip(self._edges, counts):
            info.add(edge.dependent_type, count)
        return info

    async def validate_deletion(self, referenced_id: str) -> ValidationResult:
        """Check whether referenced_id may be deleted."""
        return await self._validate(referenced_id, f"Cannot delete {self.referenced_type}")

    async def validate_identity_change(
        self, current_id: str, new_id: str | None = None
    ) -> ValidationResult:
        """Check whether the identity of current_id may change.

        Args:
            current_id: Id of the entity as currently stored
            new_id: Identity after the change. Equal to current_id means no
                change and is always valid. None means the identity-bearing
                fields change while the id is kept, which is always counted.
        """
        if new_id == current_id:
            return ValidationResult.valid()
        return await self._validate(
            current_id, f"Cannot change identity of {self.referenced_type}"
        )

    async def _validate(self, referenced_id: str, action: str) -> ValidationResult:
        if not self.config.enabled:
            logger.debug(
                f"Referential integrity disabled; allowing {self.referenced_type} {referenced_id}"
            )
            return ValidationResult.valid()

        started = time.perf_counter()
        info = await self.get_reference_inventory(referenced_id)
        duration_ms = (time.perf_counter() - started) * 1000

        if info.has_references:
            message = f"{action}. Referenced by: {', '.join(info.describe())}"
            logger.warning(
                message,
                extra={
                    "referenced_type": self.referenced_type,
                    "referenced_id": referenced_id,
                    "references": info.total(),
                    "duration_ms": round(duration_ms, 3),
                },
            )
            return ValidationResult.invalid(message, info, duration_ms)

        logger.debug(
            f"Integrity check passed for {self.referenced_type} {referenced_id} "
            f"in {duration_ms:.2f}ms"
        )
        return ValidationResult.valid(info, duration_ms)

    def violation_from_counts(
        self, referenced_id: str, counts: dict[tuple[str, str], int]
    ) -> ReferentialIntegrityViolation:
        """Violation for a guarded delete the store refused."""
        info = self.references_from_counts(referenced_id, counts)
        message = f"Cannot delete {self.referenced_type}. Referenced by: {', '.join(info.describe())}"
        return ReferentialIntegrityViolation(ValidationResult.invalid(message, info))
