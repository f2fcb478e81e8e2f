"""
EntMan Server - Main entry point.

This module assembles the entity manager from configuration:
- Document store (SQLite)
- Entity type registry and reference graph
- One Repository, one EntityCommandHandler per entity type
- One ReferentialIntegrityService per referenced type
- Event publisher (memory or Kafka)

Usage:
    python -m manager.entman_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store schema and reference indexes exist before any handler is used
    - Registries are frozen before the first command is handled
    - All handlers share one store and one publisher

How to change safely:
    - Transport adapters take handlers from EntityManager.handler(name);
      they must not build repositories themselves
    - Test the shutdown sequence when adding components
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .config import ServiceConfig
from .entities import EntityTypeRegistry, build_entity_registry
from .events import EventPublisher, create_event_publisher
from .handlers import EntityCommandHandler
from .integrity import ReferenceGraph, ReferentialIntegrityService, build_default_graph
from .repository import Repository
from .store import DocumentStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure root logging from configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


class EntityManager:
    """Entity manager orchestrator.

    Attributes:
        config: Service configuration
        store: Shared document store
        entity_registry: Frozen entity type registry
        graph: Frozen reference graph
        publisher: Event publisher

    Example:
        >>> manager = EntityManager(config)
        >>> await manager.start()
        >>> reply = await manager.handler("Protocol").delete(protocol_id)
        >>> await manager.stop()
    """

    def __init__(self, config: ServiceConfig | None = None) -> None:
        """Initialize the manager.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or ServiceConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: DocumentStore | None = None
        self.entity_registry: EntityTypeRegistry | None = None
        self.graph: ReferenceGraph | None = None
        self.publisher: EventPublisher | None = None
        self._repositories: dict[str, Repository] = {}
        self._integrity: dict[str, ReferentialIntegrityService] = {}
        self._handlers: dict[str, EntityCommandHandler] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, connect_publisher: bool = True) -> None:
        """Build and start every component.

        Args:
            connect_publisher: Connect the event publisher (tools that only
                read the store pass False)
        """
        if self._running:
            logger.warning("Entity manager already running")
            return

        logger.info("Starting EntMan entity manager")
        self.config.log_config()

        storage = self.config.storage
        Path(storage.data_dir).mkdir(parents=True, exist_ok=True)
        self.store = DocumentStore(
            data_dir=storage.data_dir,
            db_filename=storage.db_filename,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        await self.store.initialize()

        self.entity_registry = build_entity_registry()
        self.graph = build_default_graph(self.entity_registry)

        for edge in self.graph.all_edges():
            dependent = self.entity_registry.get(edge.dependent_type)
            # Expression indexes only help scalar ids; list fields are scanned.
            if not isinstance(getattr(dependent.entity_class(), edge.field), list):
                await self.store.ensure_field_index(dependent.collection, edge.field)

        self.publisher = create_event_publisher(self.config)
        if connect_publisher:
            try:
                await self.publisher.connect()
            except Exception as e:
                logger.error(f"Event publisher connection failed: {e}", exc_info=True)
                raise

        for type_def in self.entity_registry:
            integrity = None
            if self.graph.is_referenced(type_def.name):
                integrity = ReferentialIntegrityService(
                    self.store,
                    self.graph,
                    self.entity_registry,
                    type_def.name,
                    self.config.integrity,
                )
                self._integrity[type_def.name] = integrity

            repository = Repository(self.store, type_def, integrity=integrity)
            self._repositories[type_def.name] = repository
            self._handlers[type_def.name] = EntityCommandHandler(
                repository,
                self.publisher,
                integrity=integrity,
                publish_timeout_ms=self.config.events.publish_timeout_ms,
                block_identity_change=self.config.integrity.block_identity_change,
            )

        self._running = True
        logger.info(
            "EntMan entity manager started",
            extra={
                "entity_types": len(self._repositories),
                "referenced_types": len(self._integrity),
                "db_path": str(self.store.db_path),
            },
        )

    def repository(self, type_name: str) -> Repository:
        """Repository for an entity type.

        Raises:
            KeyError: If the type is unknown or the manager is not started
        """
        return self._repositories[type_name]

    def integrity(self, type_name: str) -> ReferentialIntegrityService | None:
        """Integrity service for a referenced type, None for leaf types."""
        return self._integrity.get(type_name)

    def handler(self, type_name: str) -> EntityCommandHandler:
        """Command handler for an entity type.

        Raises:
            KeyError: If the type is unknown or the manager is not started
        """
        return self._handlers[type_name]

    async def run(self) -> None:
        """Start and wait for a shutdown request."""
        try:
            await self.start()
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error(f"Entity manager startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the manager gracefully."""
        if self.publisher is not None:
            await self.publisher.close()
            self.publisher = None

        if self._running:
            self._running = False
            logger.info("EntMan entity manager stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    manager = EntityManager(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        manager.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(manager.stop())
        loop.close()


if __name__ == "__main__":
    main()
