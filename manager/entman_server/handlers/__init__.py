"""Generic command handling for entity types."""

from .entity_handler import CommandError, CommandReply, EntityCommandHandler, ErrorKind

__all__ = [
    "CommandError",
    "CommandReply",
    "EntityCommandHandler",
    "ErrorKind",
]
