"""
Integration tests for concurrent command processing.

Tests cover:
- Concurrent creates of the same composite key
- Concurrent deletes of the same id
- Delete racing a dependent create
- Concurrent updates of one document
"""

import asyncio
import tempfile

import pytest

from manager.entman_server.config import IntegrityConfig, ServiceConfig, StorageConfig
from manager.entman_server.entities import PROTOCOL, ProtocolEntity, SourceEntity
from manager.entman_server.handlers import ErrorKind
from manager.entman_server.main import EntityManager
from manager.entman_server.repository import Repository


class TestConcurrentCommands:
    """Concurrency tests against a WAL-mode SQLite store."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def manager(self, data_dir):
        config = ServiceConfig(
            storage=StorageConfig(data_dir=data_dir, busy_timeout_ms=10_000),
            integrity=IntegrityConfig(parallel=True),
        )
        manager = EntityManager(config)
        await manager.start()
        yield manager
        await manager.stop()

    @pytest.mark.asyncio
    async def test_concurrent_creates_same_key(self, manager):
        """Exactly one of N concurrent creates of one key succeeds."""
        handler = manager.handler("Source")

        replies = await asyncio.gather(
            *(
                handler.create(SourceEntity(address="a", version="1.0", name=f"n{i}"))
                for i in range(10)
            )
        )

        winners = [r for r in replies if r.success]
        losers = [r for r in replies if not r.success]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(r.error.kind == ErrorKind.DUPLICATE_KEY for r in losers)

        stored = await manager.repository("Source").get_by_composite_key("a_1.0")
        assert stored.id == winners[0].entity.id
        assert await manager.repository("Source").count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_distinct_keys(self, manager):
        handler = manager.handler("Protocol")

        replies = await asyncio.gather(
            *(handler.create(ProtocolEntity(version="1", name=f"p{i}")) for i in range(10))
        )

        assert all(r.success for r in replies)
        assert len({r.entity.id for r in replies}) == 10

    @pytest.mark.asyncio
    async def test_concurrent_deletes_one_wins(self, manager):
        handler = manager.handler("Protocol")
        protocol = (await handler.create(ProtocolEntity(version="1", name="http"))).entity

        replies = await asyncio.gather(*(handler.delete(protocol.id) for _ in range(5)))

        assert all(r.success for r in replies)
        assert sum(1 for r in replies if r.deleted) == 1

    @pytest.mark.asyncio
    async def test_delete_racing_dependent_create(self, manager):
        """A delete racing a dependent create either commits first or is refused."""
        protocols = manager.handler("Protocol")
        sources = manager.handler("Source")
        protocol = (await protocols.create(ProtocolEntity(version="1", name="http"))).entity

        delete_reply, create_reply = await asyncio.gather(
            protocols.delete(protocol.id),
            sources.create(SourceEntity(address="a", version="1", protocol_id=protocol.id)),
        )

        assert create_reply.success
        if delete_reply.deleted:
            # Delete committed before the source insert.
            assert await manager.repository("Protocol").get_by_id(protocol.id) is None
        else:
            assert delete_reply.error.kind == ErrorKind.REFERENTIAL_INTEGRITY_VIOLATION
            assert await manager.repository("Protocol").exists(protocol.id)

    @pytest.mark.asyncio
    async def test_concurrent_updates_never_move_updated_at_backward(self, manager, monkeypatch):
        """Updates whose clock reads arrive at the store out of order stay monotonic."""
        ticks = iter(range(2_000, 2_000 + 1_000 * 6, 1_000))
        repo = Repository(manager.store, PROTOCOL, clock=lambda: next(ticks))
        created = await repo.create(ProtocolEntity(version="1", name="http"), created_by="alice")

        last_tick = 2_000 + 1_000 * 5
        committed = []
        replace = manager.store.replace

        async def delayed_replace(*args, updated_at=None, **kwargs):
            # Later clock readings reach the store first.
            await asyncio.sleep((last_tick - updated_at) / 1_000 * 0.02)
            doc = await replace(*args, updated_at=updated_at, **kwargs)
            committed.append(doc.updated_at)
            return doc

        monkeypatch.setattr(manager.store, "replace", delayed_replace)

        results = await asyncio.gather(
            *(
                repo.update(
                    ProtocolEntity(id=created.id, version="1", name="http", description=str(i)),
                    updated_by=f"writer-{i}",
                )
                for i in range(5)
            )
        )

        assert len(committed) == 5
        assert committed == sorted(committed)
        assert sorted(r.updated_at for r in results) == committed

        stored = await repo.get_by_id(created.id)
        assert stored.updated_at == max(committed) == last_tick
        assert stored.created_at == created.created_at
        assert stored.created_by == "alice"
