"""
Integration tests for the entman-integrity CLI.

Tests cover:
- graph / types output
- inventory and validate-delete against a populated database
- Exit codes for errors
"""

import asyncio
import json
import tempfile

import pytest

from manager.entman_server.config import ServiceConfig, StorageConfig
from manager.entman_server.entities import DestinationEntity, ProtocolEntity, SourceEntity
from manager.entman_server.main import EntityManager
from manager.entman_server.tools.integrity_cli import main


async def _populate(data_dir: str) -> dict[str, str]:
    manager = EntityManager(ServiceConfig(storage=StorageConfig(data_dir=data_dir)))
    await manager.start()
    try:
        protocols = manager.repository("Protocol")
        used = await protocols.create(ProtocolEntity(version="1", name="http"))
        unused = await protocols.create(ProtocolEntity(version="1", name="ftp"))
        for address in ("a", "b"):
            await manager.repository("Source").create(
                SourceEntity(address=address, version="1", protocol_id=used.id)
            )
        await manager.repository("Destination").create(
            DestinationEntity(address="c", version="1", protocol_id=used.id)
        )
    finally:
        await manager.stop()
    return {"used": used.id, "unused": unused.id}


def _run(capsys, *argv):
    with pytest.raises(SystemExit) as exc_info:
        main(list(argv))
    captured = capsys.readouterr()
    return exc_info.value.code, captured.out, captured.err


class TestIntegrityCLI:
    """Tests for the CLI entry point."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def ids(self, data_dir):
        return asyncio.run(_populate(data_dir))

    def test_graph_text(self, capsys):
        code, out, _ = _run(capsys, "graph")
        assert code == 0
        assert "Protocol:" in out
        assert "  <- Source.protocol_id" in out

    def test_graph_json(self, capsys):
        code, out, _ = _run(capsys, "--format", "json", "graph")
        assert code == 0
        assert "TaskScheduled" in {e["dependent_type"] for e in json.loads(out)["ScheduledFlow"]}

    def test_types(self, capsys):
        code, out, _ = _run(capsys, "types")
        assert code == 0
        names = [t["name"] for t in json.loads(out)["entity_types"]]
        assert "OrchestratedFlow" in names

    def test_inventory(self, capsys, data_dir, ids):
        code, out, _ = _run(capsys, "--data-dir", data_dir, "inventory", "Protocol", ids["used"])
        assert code == 0
        assert "  - Source (2 records)" in out
        assert "  - Destination (1 records)" in out

    def test_inventory_json(self, capsys, data_dir, ids):
        code, out, _ = _run(
            capsys, "--data-dir", data_dir, "--format", "json", "inventory", "Protocol", ids["used"]
        )
        assert code == 0
        data = json.loads(out)
        assert data["counts"]["Source"] == 2
        assert data["total"] == 3

    def test_validate_delete_blocked(self, capsys, data_dir, ids):
        code, out, _ = _run(
            capsys, "--data-dir", data_dir, "validate-delete", "Protocol", ids["used"]
        )
        assert code == 1
        assert out.strip() == (
            "Cannot delete Protocol. Referenced by: Source (2 records), Destination (1 records)"
        )

    def test_validate_delete_allowed(self, capsys, data_dir, ids):
        code, out, _ = _run(
            capsys, "--data-dir", data_dir, "validate-delete", "Protocol", ids["unused"]
        )
        assert code == 0
        assert "can be deleted" in out

    def test_validate_delete_ignores_disabled_flag(self, capsys, data_dir, ids, monkeypatch):
        monkeypatch.setenv("INTEGRITY_ENABLED", "false")
        code, _, _ = _run(capsys, "--data-dir", data_dir, "validate-delete", "Protocol", ids["used"])
        assert code == 1

    def test_unknown_type(self, capsys, data_dir, ids):
        code, _, err = _run(capsys, "--data-dir", data_dir, "inventory", "Nope", "x")
        assert code == 2
        assert "Unknown entity type" in err

    def test_missing_database(self, capsys, data_dir):
        code, _, err = _run(capsys, "--data-dir", data_dir, "inventory", "Protocol", "x")
        assert code == 2
        assert "No entity database" in err
