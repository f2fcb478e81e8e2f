"""
Entities module for EntMan.

This module provides the entity data model and type system:
- Entity dataclasses (one per configuration entity type)
- ConfigValue sum type and configuration normalization
- EntityTypeDef / EntityTypeRegistry (collections and composite keys)
- The catalog of built-in entity types

Invariants:
    - Type names and collections are unique and fixed once frozen
    - Composite-key projections are deterministic

How to change safely:
    - Add new types to catalog.py with a new collection
    - Keep key projections stable for existing types
"""

from .catalog import (
    ASSIGNMENT,
    BUILTIN_TYPES,
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
    build_entity_registry,
)
from .registry import (
    DuplicateRegistrationError,
    EntityTypeDef,
    EntityTypeRegistry,
    RegistryFrozenError,
    UnknownEntityTypeError,
)
from .types import (
    AssignmentEntity,
    ConfigValue,
    DestinationEntity,
    Entity,
    ExporterEntity,
    FlowEntity,
    ImporterEntity,
    InvalidConfigurationError,
    OrchestratedFlowEntity,
    ProcessingChainEntity,
    ProcessorEntity,
    ProtocolEntity,
    ScheduledFlowEntity,
    SourceEntity,
    StepEntity,
    TaskScheduledEntity,
    normalize_configuration,
)

__all__ = [
    # Types
    "Entity",
    "ConfigValue",
    "InvalidConfigurationError",
    "normalize_configuration",
    "ProtocolEntity",
    "SourceEntity",
    "DestinationEntity",
    "ImporterEntity",
    "ExporterEntity",
    "ProcessorEntity",
    "StepEntity",
    "ProcessingChainEntity",
    "FlowEntity",
    "ScheduledFlowEntity",
    "TaskScheduledEntity",
    "AssignmentEntity",
    "OrchestratedFlowEntity",
    # Registry
    "EntityTypeDef",
    "EntityTypeRegistry",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
    "UnknownEntityTypeError",
    # Catalog
    "BUILTIN_TYPES",
    "PROTOCOL",
    "SOURCE",
    "DESTINATION",
    "IMPORTER",
    "EXPORTER",
    "PROCESSOR",
    "STEP",
    "PROCESSING_CHAIN",
    "FLOW",
    "SCHEDULED_FLOW",
    "TASK_SCHEDULED",
    "ASSIGNMENT",
    "ORCHESTRATED_FLOW",
    "build_entity_registry",
]
