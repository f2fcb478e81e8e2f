"""
Entity type definitions for EntMan.

This module defines the data model shared by every configuration entity:
- Entity: base shape (id, version, name, description, configuration, audit)
- One dataclass per entity type carrying its own extra fields
- ConfigValue: the sum type allowed inside an entity's configuration map

Invariants:
    - id is assigned by the repository on create and never changes
    - configuration only holds str, int, float, bool, None, lists and
      string-keyed mappings of those (recursively)
    - to_dict() output is JSON-serializable and deterministic

How to change safely:
    - Add new fields with defaults so stored documents keep loading
    - Never rename a field that participates in a composite key or a
      reference edge without a data migration
    - Unknown keys in stored documents are ignored by from_dict()

Example:
    >>> source = SourceEntity(address="sftp://host", version="1.0", name="in")
    >>> source.configuration = normalize_configuration({"retries": 3})
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Union

ConfigValue = Union[
    str,
    int,
    float,
    bool,
    None,
    list["ConfigValue"],
    dict[str, "ConfigValue"],
]


class InvalidConfigurationError(ValueError):
    """Configuration map contains a value outside the ConfigValue sum type."""

    pass


def normalize_configuration(value: Any, path: str = "configuration") -> dict[str, ConfigValue]:
    """Validate and copy a configuration mapping.

    Tuples are accepted and stored as lists. Mapping keys must be strings.
    Floats must be finite so the stored JSON stays portable.

    Args:
        value: Mapping to validate (None is treated as empty)
        path: Location used in error messages

    Returns:
        A deep copy containing only ConfigValue members

    Raises:
        InvalidConfigurationError: If any nested value is not allowed
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidConfigurationError(
            f"{path} must be a mapping, got {type(value).__name__}"
        )
    return _normalize_mapping(value, path)


def _normalize_mapping(value: dict, path: str) -> dict[str, ConfigValue]:
    result: dict[str, ConfigValue] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise InvalidConfigurationError(
                f"{path} keys must be strings, got {type(key).__name__}"
            )
        result[key] = _normalize_value(item, f"{path}.{key}")
    return result


def _normalize_value(value: Any, path: str) -> ConfigValue:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidConfigurationError(f"{path} must be a finite number")
        return value
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, dict):
        return _normalize_mapping(value, path)
    raise InvalidConfigurationError(
        f"{path} has unsupported type {type(value).__name__}"
    )


@dataclass
class Entity:
    """Base shape shared by every configuration entity.

    Attributes:
        id: Opaque unique identifier (UUID text), assigned on create
        version: Version label
        name: Human-readable name
        description: Free text
        configuration: String-keyed ConfigValue mapping
        created_at: Creation timestamp (Unix ms)
        created_by: Actor that created the entity
        updated_at: Last update timestamp (Unix ms), None until first update
        updated_by: Actor that last updated the entity
    """

    id: str = ""
    version: str = ""
    name: str = ""
    description: str = ""
    configuration: dict[str, ConfigValue] = field(default_factory=dict)
    created_at: int = 0
    created_by: str = ""
    updated_at: int | None = None
    updated_by: str = ""

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        """Names of all dataclass fields, in declaration order."""
        return tuple(f.name for f in fields(cls))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        """Create from dictionary representation.

        Keys that are not fields of this entity type are ignored.
        """
        known = set(cls.field_names())
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ProtocolEntity(Entity):
    """Communication protocol referenced by sources, destinations and plugins."""

    pass


@dataclass
class SourceEntity(Entity):
    """Inbound data endpoint."""

    address: str = ""
    protocol_id: str = ""


@dataclass
class DestinationEntity(Entity):
    """Outbound data endpoint."""

    address: str = ""
    protocol_id: str = ""


@dataclass
class ImporterEntity(Entity):
    """Plugin that reads data in through a protocol."""

    protocol_id: str = ""
    output_schema: str = ""


@dataclass
class ExporterEntity(Entity):
    """Plugin that writes data out through a protocol."""

    protocol_id: str = ""
    input_schema: str = ""


@dataclass
class ProcessorEntity(Entity):
    """Plugin that transforms data.

    input_schema and output_schema are opaque strings; their shape is
    not validated here.
    """

    protocol_id: str = ""
    input_schema: str = ""
    output_schema: str = ""


@dataclass
class StepEntity(Entity):
    """Node of a processing graph wrapping an importer, exporter or processor."""

    entity_id: str = ""
    next_step_ids: list[str] = field(default_factory=list)


@dataclass
class ProcessingChainEntity(Entity):
    """Ordered chain of steps."""

    step_ids: list[str] = field(default_factory=list)


@dataclass
class FlowEntity(Entity):
    """Graph of steps forming a runnable flow."""

    step_ids: list[str] = field(default_factory=list)


@dataclass
class ScheduledFlowEntity(Entity):
    """Flow bound to a source and a set of destinations."""

    source_id: str = ""
    destination_ids: list[str] = field(default_factory=list)
    flow_id: str = ""


@dataclass
class TaskScheduledEntity(Entity):
    """Schedule entry that triggers a scheduled flow."""

    scheduled_flow_id: str = ""


@dataclass
class AssignmentEntity(Entity):
    """Binds the entities that a step operates on."""

    step_id: str = ""
    entity_ids: list[str] = field(default_factory=list)


@dataclass
class OrchestratedFlowEntity(Entity):
    """Flow together with the assignments that parameterize it."""

    flow_id: str = ""
    assignment_ids: list[str] = field(default_factory=list)
