"""
Referential integrity for EntMan.

This module provides:
- ReferenceGraph: declarative table of referenced type -> dependent edges
- ReferentialIntegrityService: live dependent counting per referenced type
- ReferenceInfo / ValidationResult: inventories and validation outcomes
"""

from .graph import (
    DEFAULT_EDGES,
    InvalidReferenceEdgeError,
    ReferenceEdge,
    ReferenceGraph,
    build_default_graph,
)
from .service import (
    ReferenceInfo,
    ReferentialIntegrityService,
    ReferentialIntegrityViolation,
    ValidationResult,
)

__all__ = [
    "DEFAULT_EDGES",
    "InvalidReferenceEdgeError",
    "ReferenceEdge",
    "ReferenceGraph",
    "build_default_graph",
    "ReferenceInfo",
    "ReferentialIntegrityService",
    "ReferentialIntegrityViolation",
    "ValidationResult",
]
