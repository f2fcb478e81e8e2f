"""
Integration tests for the assembled entity manager.

Tests cover:
- Startup wiring (handlers, integrity services, reference indexes)
- Reference chains across the whole entity graph
- Logging setup
"""

import logging
import sqlite3
import tempfile

import json_log_formatter
import pytest

from manager.entman_server.config import (
    IntegrityConfig,
    ObservabilityConfig,
    ServiceConfig,
    StorageConfig,
)
from manager.entman_server.entities import (
    AssignmentEntity,
    DestinationEntity,
    FlowEntity,
    ImporterEntity,
    OrchestratedFlowEntity,
    ProcessorEntity,
    ProtocolEntity,
    ScheduledFlowEntity,
    SourceEntity,
    StepEntity,
    TaskScheduledEntity,
)
from manager.entman_server.handlers import ErrorKind
from manager.entman_server.main import EntityManager, setup_logging


class TestEntityManager:
    """Tests for EntityManager."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def config(self, data_dir):
        return ServiceConfig(storage=StorageConfig(data_dir=f"{data_dir}/nested"))

    @pytest.fixture
    async def manager(self, config):
        manager = EntityManager(config)
        await manager.start()
        yield manager
        await manager.stop()

    @pytest.mark.asyncio
    async def test_start_wires_every_type(self, manager):
        assert manager.running
        assert manager.publisher.is_connected
        for type_def in manager.entity_registry:
            assert manager.handler(type_def.name).type_name == type_def.name
            assert manager.repository(type_def.name).collection == type_def.collection

        assert manager.integrity("Protocol") is not None
        assert manager.integrity("Step") is not None
        assert manager.integrity("TaskScheduled") is None
        assert manager.integrity("OrchestratedFlow") is None

    @pytest.mark.asyncio
    async def test_reference_indexes_created(self, manager):
        conn = sqlite3.connect(str(manager.store.db_path))
        try:
            names = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
            }
        finally:
            conn.close()

        assert "idx_ref_sources_protocol_id" in names
        assert "idx_ref_steps_entity_id" in names
        assert "idx_ref_task_scheduleds_scheduled_flow_id" in names
        # List-valued fields are not indexed
        assert "idx_ref_flows_step_ids" not in names

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, manager):
        await manager.start()
        assert manager.running

    @pytest.mark.asyncio
    async def test_stop_closes_publisher(self, config):
        manager = EntityManager(config)
        await manager.start()
        publisher = manager.publisher
        await manager.stop()
        assert not manager.running
        assert not publisher.is_connected

    @pytest.mark.asyncio
    async def test_unknown_type_raises(self, manager):
        with pytest.raises(KeyError):
            manager.handler("Nope")

    @pytest.mark.asyncio
    async def test_flow_graph_teardown_order(self, manager):
        """Entities can only be removed leaves-first."""
        h = manager.handler

        protocol = (await h("Protocol").create(ProtocolEntity(version="1", name="sftp"))).entity
        source = (
            await h("Source").create(
                SourceEntity(address="sftp://in", version="1", protocol_id=protocol.id)
            )
        ).entity
        destination = (
            await h("Destination").create(
                DestinationEntity(address="sftp://out", version="1", protocol_id=protocol.id)
            )
        ).entity
        importer = (
            await h("Importer").create(
                ImporterEntity(version="1", name="csv", protocol_id=protocol.id)
            )
        ).entity
        processor = (
            await h("Processor").create(
                ProcessorEntity(version="1", name="clean", protocol_id=protocol.id)
            )
        ).entity
        step_in = (
            await h("Step").create(StepEntity(version="1", name="in", entity_id=importer.id))
        ).entity
        step_clean = (
            await h("Step").create(StepEntity(version="1", name="clean", entity_id=processor.id))
        ).entity
        step_in.next_step_ids = [step_clean.id]
        assert (await h("Step").update(step_in)).success

        flow = (
            await h("Flow").create(
                FlowEntity(version="1", name="etl", step_ids=[step_in.id, step_clean.id])
            )
        ).entity
        scheduled = (
            await h("ScheduledFlow").create(
                ScheduledFlowEntity(
                    version="1",
                    name="nightly",
                    source_id=source.id,
                    destination_ids=[destination.id],
                    flow_id=flow.id,
                )
            )
        ).entity
        task = (
            await h("TaskScheduled").create(
                TaskScheduledEntity(version="1", name="t", scheduled_flow_id=scheduled.id)
            )
        ).entity
        assignment = (
            await h("Assignment").create(
                AssignmentEntity(step_id=step_clean.id, entity_ids=[processor.id])
            )
        ).entity
        orchestrated = (
            await h("OrchestratedFlow").create(
                OrchestratedFlowEntity(
                    version="1", name="o", flow_id=flow.id, assignment_ids=[assignment.id]
                )
            )
        ).entity

        blocked = await h("Protocol").delete(protocol.id)
        assert blocked.error.kind == ErrorKind.REFERENTIAL_INTEGRITY_VIOLATION
        assert blocked.error.message == (
            "Cannot delete Protocol. Referenced by: Source (1 records), "
            "Destination (1 records), Importer (1 records), Processor (1 records)"
        )

        blocked = await h("Step").delete(step_clean.id)
        assert blocked.error.message == (
            "Cannot delete Step. Referenced by: Step (1 records), "
            "Flow (1 records), Assignment (1 records)"
        )

        blocked = await h("Flow").delete(flow.id)
        assert blocked.error.message == (
            "Cannot delete Flow. Referenced by: ScheduledFlow (1 records), "
            "OrchestratedFlow (1 records)"
        )

        # Tear down leaves-first
        for type_name, entity in [
            ("OrchestratedFlow", orchestrated),
            ("Assignment", assignment),
            ("TaskScheduled", task),
            ("ScheduledFlow", scheduled),
            ("Flow", flow),
            ("Step", step_in),
            ("Step", step_clean),
            ("Importer", importer),
            ("Processor", processor),
            ("Source", source),
            ("Destination", destination),
            ("Protocol", protocol),
        ]:
            reply = await h(type_name).delete(entity.id)
            assert reply.success, (type_name, reply.error)
            assert reply.deleted is True

        assert manager.publisher.events_of_type("entity_deleted")[-1].entity_id == protocol.id

    @pytest.mark.asyncio
    async def test_integrity_disabled(self, data_dir):
        config = ServiceConfig(
            storage=StorageConfig(data_dir=data_dir),
            integrity=IntegrityConfig(enabled=False),
        )
        manager = EntityManager(config)
        await manager.start()
        try:
            protocol = (
                await manager.handler("Protocol").create(ProtocolEntity(version="1", name="x"))
            ).entity
            await manager.handler("Source").create(
                SourceEntity(address="a", version="1", protocol_id=protocol.id)
            )
            reply = await manager.handler("Protocol").delete(protocol.id)
            assert reply.success
            assert reply.deleted is True
        finally:
            await manager.stop()


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(ServiceConfig(observability=ObservabilityConfig(log_level="DEBUG")))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("aiokafka").level == logging.WARNING

    def test_text_format(self):
        setup_logging(
            ServiceConfig(observability=ObservabilityConfig(log_level="bogus", log_format="text"))
        )
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
