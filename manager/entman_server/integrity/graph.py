"""
Reference graph registry for EntMan.

The ReferenceGraph is a declarative table of which entity types reference
which, and through which foreign-key field:

    referenced type -> [(dependent type, foreign-key field), ...]

Adding a referenced type or a new dependent edge is a data change here,
not a code change in the integrity service.

Invariants:
    - Every edge names registered entity types and an existing field
    - Edge order is registration order; reference inventories follow it
    - A frozen graph never changes

How to change safely:
    - Add edges before freeze()
    - A new foreign-key field also gets an expression index at startup
      (see EntityManager.start), so no manual index script is needed
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from ..entities import (
    ASSIGNMENT,
    DESTINATION,
    EXPORTER,
    FLOW,
    IMPORTER,
    ORCHESTRATED_FLOW,
    PROCESSING_CHAIN,
    PROCESSOR,
    PROTOCOL,
    SCHEDULED_FLOW,
    SOURCE,
    STEP,
    TASK_SCHEDULED,
    EntityTypeRegistry,
    RegistryFrozenError,
)

logger = logging.getLogger(__name__)


class InvalidReferenceEdgeError(ValueError):
    """Edge names an unknown type or a field the dependent type lacks."""

    pass


@dataclass(frozen=True)
class ReferenceEdge:
    """One foreign-key relationship.

    Attributes:
        referenced_type: Type whose id is stored in the field ("Protocol")
        dependent_type: Type holding the field ("Source")
        field: Foreign-key field on the dependent ("protocol_id"); may be a
            scalar id or a list of ids
    """

    referenced_type: str
    dependent_type: str
    field: str

    @property
    def label(self) -> str:
        """Dotted form used in configuration ("Source.protocol_id")."""
        return f"{self.dependent_type}.{self.field}"

    def to_dict(self) -> dict[str, str]:
        return {
            "referenced_type": self.referenced_type,
            "dependent_type": self.dependent_type,
            "field": self.field,
        }


DEFAULT_EDGES: tuple[tuple[str, str, str], ...] = (
    (PROTOCOL.name, SOURCE.name, "protocol_id"),
    (PROTOCOL.name, DESTINATION.name, "protocol_id"),
    (PROTOCOL.name, IMPORTER.name, "protocol_id"),
    (PROTOCOL.name, EXPORTER.name, "protocol_id"),
    (PROTOCOL.name, PROCESSOR.name, "protocol_id"),
    (IMPORTER.name, STEP.name, "entity_id"),
    (EXPORTER.name, STEP.name, "entity_id"),
    (PROCESSOR.name, STEP.name, "entity_id"),
    (STEP.name, STEP.name, "next_step_ids"),
    (STEP.name, PROCESSING_CHAIN.name, "step_ids"),
    (STEP.name, FLOW.name, "step_ids"),
    (STEP.name, ASSIGNMENT.name, "step_id"),
    (SOURCE.name, SCHEDULED_FLOW.name, "source_id"),
    (DESTINATION.name, SCHEDULED_FLOW.name, "destination_ids"),
    (FLOW.name, SCHEDULED_FLOW.name, "flow_id"),
    (FLOW.name, ORCHESTRATED_FLOW.name, "flow_id"),
    (SCHEDULED_FLOW.name, TASK_SCHEDULED.name, "scheduled_flow_id"),
    (ASSIGNMENT.name, ORCHESTRATED_FLOW.name, "assignment_ids"),
)


class ReferenceGraph:
    """Registry of reference edges between entity types.

    Example:
        >>> graph = ReferenceGraph(build_entity_registry())
        >>> graph.add_edge("Protocol", "Source", "protocol_id")
        >>> [e.label for e in graph.edges_for("Protocol")]
        ['Source.protocol_id']
    """

    def __init__(self, entity_registry: EntityTypeRegistry) -> None:
        self._entities = entity_registry
        self._edges: dict[str, list[ReferenceEdge]] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add_edge(self, referenced_type: str, dependent_type: str, field: str) -> ReferenceEdge:
        """Register a reference edge.

        Raises:
            RegistryFrozenError: If the graph is frozen
            InvalidReferenceEdgeError: If a type is unknown or the field is missing
        """
        referenced = self._entities.find(referenced_type)
        dependent = self._entities.find(dependent_type)
        if referenced is None:
            raise InvalidReferenceEdgeError(f"Unknown referenced type '{referenced_type}'")
        if dependent is None:
            raise InvalidReferenceEdgeError(f"Unknown dependent type '{dependent_type}'")
        if not dependent.has_field(field):
            raise InvalidReferenceEdgeError(
                f"{dependent_type} has no field '{field}' to reference {referenced_type}"
            )

        edge = ReferenceEdge(referenced_type, dependent_type, field)
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot add edge {edge.label}: graph is frozen")
            edges = self._edges.setdefault(referenced_type, [])
            if edge not in edges:
                edges.append(edge)
        logger.debug(f"Registered reference edge {referenced_type} <- {edge.label}")
        return edge

    def edges_for(self, referenced_type: str) -> list[ReferenceEdge]:
        """Edges pointing at a referenced type, in registration order."""
        return list(self._edges.get(referenced_type, ()))

    def is_referenced(self, type_name: str) -> bool:
        """Whether any dependent edge targets this type."""
        return bool(self._edges.get(type_name))

    def referenced_types(self) -> list[str]:
        """Referenced type names in registration order."""
        return [name for name, edges in self._edges.items() if edges]

    def all_edges(self) -> list[ReferenceEdge]:
        return [edge for edges in self._edges.values() for edge in edges]

    def freeze(self) -> None:
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Reference graph is already frozen")
            self._frozen = True
        logger.info(f"Reference graph frozen with {len(self.all_edges())} edges")

    def to_dict(self) -> dict[str, Any]:
        return {
            name: [edge.to_dict() for edge in edges]
            for name, edges in self._edges.items()
            if edges
        }


def build_default_graph(entity_registry: EntityTypeRegistry, freeze: bool = True) -> ReferenceGraph:
    """Create a ReferenceGraph with every built-in edge registered."""
    graph = ReferenceGraph(entity_registry)
    for referenced, dependent, field in DEFAULT_EDGES:
        graph.add_edge(referenced, dependent, field)
    if freeze:
        graph.freeze()
    return graph
