"""
Built-in entity types.

Composite keys:
    - Address-bearing endpoints (sources, destinations): address_version
    - Assignments: step_id (one assignment per step)
    - Everything else: version_name
"""

from __future__ import annotations

from .registry import EntityTypeDef, EntityTypeRegistry
from .types import (
    AssignmentEntity,
    DestinationEntity,
    ExporterEntity,
    FlowEntity,
    ImporterEntity,
    OrchestratedFlowEntity,
    ProcessingChainEntity,
    ProcessorEntity,
    ProtocolEntity,
    ScheduledFlowEntity,
    SourceEntity,
    StepEntity,
    TaskScheduledEntity,
)

PROTOCOL = EntityTypeDef("Protocol", "protocols", ProtocolEntity)
SOURCE = EntityTypeDef("Source", "sources", SourceEntity, key_fields=("address", "version"))
DESTINATION = EntityTypeDef(
    "Destination", "destinations", DestinationEntity, key_fields=("address", "version")
)
IMPORTER = EntityTypeDef("Importer", "importers", ImporterEntity)
EXPORTER = EntityTypeDef("Exporter", "exporters", ExporterEntity)
PROCESSOR = EntityTypeDef("Processor", "processors", ProcessorEntity)
STEP = EntityTypeDef("Step", "steps", StepEntity)
PROCESSING_CHAIN = EntityTypeDef("ProcessingChain", "processing_chains", ProcessingChainEntity)
FLOW = EntityTypeDef("Flow", "flows", FlowEntity)
SCHEDULED_FLOW = EntityTypeDef("ScheduledFlow", "scheduled_flows", ScheduledFlowEntity)
TASK_SCHEDULED = EntityTypeDef("TaskScheduled", "task_scheduleds", TaskScheduledEntity)
ASSIGNMENT = EntityTypeDef("Assignment", "assignments", AssignmentEntity, key_fields=("step_id",))
ORCHESTRATED_FLOW = EntityTypeDef("OrchestratedFlow", "orchestrated_flows", OrchestratedFlowEntity)

BUILTIN_TYPES: tuple[EntityTypeDef, ...] = (
    PROTOCOL,
    SOURCE,
    DESTINATION,
    IMPORTER,
    EXPORTER,
    PROCESSOR,
    STEP,
    PROCESSING_CHAIN,
    FLOW,
    SCHEDULED_FLOW,
    TASK_SCHEDULED,
    ASSIGNMENT,
    ORCHESTRATED_FLOW,
)


def build_entity_registry(freeze: bool = True) -> EntityTypeRegistry:
    """Create a registry holding every built-in entity type.

    Args:
        freeze: Freeze the registry before returning it

    Returns:
        Populated EntityTypeRegistry
    """
    registry = EntityTypeRegistry()
    for type_def in BUILTIN_TYPES:
        registry.register(type_def)
    if freeze:
        registry.freeze()
    return registry
