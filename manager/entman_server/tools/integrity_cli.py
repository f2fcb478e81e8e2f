"""
Referential integrity CLI tool for EntMan.

Read-only diagnostics against an entity database:
- graph: Print the reference graph
- types: Print the registered entity types and their composite keys
- inventory: Count dependents of one entity
- validate-delete: Check whether an entity could be deleted now

Usage:
    entman-integrity graph
    entman-integrity inventory Protocol 3f0c...
    entman-integrity validate-delete Protocol 3f0c... --data-dir /var/lib/entman

Invariants:
    - Never writes to the store (the database must already exist)
    - validate-delete exits 1 when dependents exist, 0 otherwise
    - Usage and lookup errors exit 2

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep JSON output stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any

from ..config import IntegrityConfig, StorageConfig
from ..entities import EntityTypeRegistry, UnknownEntityTypeError, build_entity_registry
from ..integrity import ReferenceGraph, ReferentialIntegrityService, build_default_graph
from ..store import DocumentStore, StoreNotInitializedError

logger = logging.getLogger(__name__)


class IntegrityCLI:
    """CLI tool for referential integrity diagnostics.

    Example:
        >>> cli = IntegrityCLI(store)
        >>> info = await cli.inventory("Protocol", protocol_id)
        >>> info.describe()
        ['Source (2 records)']
    """

    def __init__(
        self,
        store: DocumentStore,
        integrity_config: IntegrityConfig | None = None,
        entity_registry: EntityTypeRegistry | None = None,
        graph: ReferenceGraph | None = None,
    ) -> None:
        self.store = store
        self.integrity_config = integrity_config or IntegrityConfig()
        self.entity_registry = entity_registry or build_entity_registry()
        self.graph = graph or build_default_graph(self.entity_registry)

    def _service(self, type_name: str) -> ReferentialIntegrityService:
        return ReferentialIntegrityService(
            self.store, self.graph, self.entity_registry, type_name, self.integrity_config
        )

    def graph_dict(self) -> dict[str, Any]:
        return self.graph.to_dict()

    def types_dict(self) -> dict[str, Any]:
        return self.entity_registry.to_dict()

    async def inventory(self, type_name: str, entity_id: str):
        if not await self.store.is_initialized():
            raise StoreNotInitializedError(f"No entity database at {self.store.db_path}")
        return await self._service(type_name).get_reference_inventory(entity_id)

    async def validate_delete(self, type_name: str, entity_id: str):
        if not await self.store.is_initialized():
            raise StoreNotInitializedError(f"No entity database at {self.store.db_path}")
        # Diagnostics always count, even when the service flag disables checks.
        service = ReferentialIntegrityService(
            self.store,
            self.graph,
            self.entity_registry,
            type_name,
            replace(self.integrity_config, enabled=True),
        )
        return await service.validate_deletion(entity_id)


def _print_graph(graph: dict[str, Any]) -> None:
    for referenced, edges in graph.items():
        print(f"{referenced}:")
        for edge in edges:
            print(f"  <- {edge['dependent_type']}.{edge['field']}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the integrity tool."""
    parser = argparse.ArgumentParser(description="EntMan referential integrity tool")
    parser.add_argument("--data-dir", help="Directory holding the entity database (default: $DATA_DIR)")
    parser.add_argument("--db-filename", help="Database file name (default: $DB_FILENAME)")
    parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("graph", help="Print the reference graph")
    subparsers.add_parser("types", help="Print registered entity types")

    inventory_parser = subparsers.add_parser("inventory", help="Count dependents of an entity")
    inventory_parser.add_argument("type", help="Entity type name (e.g. Protocol)")
    inventory_parser.add_argument("id", help="Entity id")

    validate_parser = subparsers.add_parser(
        "validate-delete", help="Check whether an entity can be deleted"
    )
    validate_parser.add_argument("type", help="Entity type name (e.g. Protocol)")
    validate_parser.add_argument("id", help="Entity id")

    args = parser.parse_args(argv)

    storage = StorageConfig.from_env()
    if args.data_dir:
        storage = replace(storage, data_dir=args.data_dir)
    if args.db_filename:
        storage = replace(storage, db_filename=args.db_filename)

    store = DocumentStore(
        data_dir=storage.data_dir,
        db_filename=storage.db_filename,
        wal_mode=storage.wal_mode,
        busy_timeout_ms=storage.busy_timeout_ms,
    )
    cli = IntegrityCLI(store, IntegrityConfig.from_env())

    if args.command == "graph":
        graph = cli.graph_dict()
        if args.format == "json":
            print(json.dumps(graph, indent=2, sort_keys=True))
        else:
            _print_graph(graph)
        sys.exit(0)

    elif args.command == "types":
        print(json.dumps(cli.types_dict(), indent=2))
        sys.exit(0)

    try:
        if args.command == "inventory":
            info = asyncio.run(cli.inventory(args.type, args.id))
            if args.format == "json":
                print(json.dumps(info.to_dict(), indent=2))
            elif not info.has_references:
                print(f"{args.type} {args.id} has no dependents")
            else:
                print(f"{args.type} {args.id} is referenced by:")
                for line in info.describe():
                    print(f"  - {line}")
            sys.exit(0)

        elif args.command == "validate-delete":
            result = asyncio.run(cli.validate_delete(args.type, args.id))
            if args.format == "json":
                print(json.dumps(result.to_dict(), indent=2))
            elif result.is_valid:
                print(f"{args.type} {args.id} can be deleted")
            else:
                print(result.error_message)
            sys.exit(0 if result.is_valid else 1)

    except UnknownEntityTypeError as e:
        print(f"Error: {e.args[0]}", file=sys.stderr)
        sys.exit(2)
    except StoreNotInitializedError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
