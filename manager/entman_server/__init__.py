"""
EntMan Server - configuration entity manager with referential integrity.

This package manages a graph of configuration entities (protocols, sources,
destinations, importers, exporters, processors, steps, flows, schedules and
assignments) persisted in a SQLite document store:
- One generic Repository per entity type (composite-key uniqueness, audit stamps)
- A declarative reference graph naming which fields point at which types
- A Referential Integrity Service that counts live dependents before a
  referenced entity is deleted or has its identity changed
- An event publisher notified after every committed mutation

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │  Adapter    │────▶│  EntityCommand   │────▶│  Referential     │
    │ (bus/HTTP)  │     │  Handler         │     │  Integrity Svc   │
    └─────────────┘     └────────┬─────────┘     └────────┬─────────┘
                                 │                        │ counts
                                 ▼                        ▼
                        ┌─────────────────┐      ┌─────────────────┐
                        │   Repository    │─────▶│  DocumentStore  │
                        └────────┬────────┘      │    (SQLite)     │
                                 │               └─────────────────┘
                                 ▼
                        ┌─────────────────┐
                        │ EventPublisher  │ (memory / Kafka)
                        └─────────────────┘

Invariants:
    - At most one live document per composite key per entity type
    - Entity ids are assigned once and never reused or mutated
    - A referenced entity is never deleted while a registered dependent
      still points at it
    - updated_at never moves backward for a document

How to change safely:
    - New entity types go in entities/catalog.py
    - New reference edges go in integrity/graph.py (data, not code)
    - Keep composite-key projections stable; changing one needs a data migration

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
