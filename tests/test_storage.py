"""Tests for posregistry.storage — in-memory store and agent records."""

import pytest

from posregistry.errors import AgentAlreadyRegistered, AgentNotFound, ConcurrencyConflict
from posregistry.storage import MemoryStore, new_agent_record


def _record(did="did:sol:devnet:Key1", name="Bot"):
    return new_agent_record(
        did=did, owner_pubkey=did.split(":")[-1], name=name,
        capabilities={"skills": ["a"], "success_rate": 1.0, "latency_ms": 5},
    )


class TestNewAgentRecord:
    def test_defaults(self):
        rec = _record()
        assert rec["reputation"] == 0.0
        assert rec["disclosure"] == "selective"
        assert rec["created_at"] == rec["updated_at"]
        assert rec["id"]

    def test_unique_ids(self):
        assert _record()["id"] != _record()["id"]


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self):
        store = MemoryStore()
        rec = await store.create_agent(_record())
        fetched = await store.get_agent(rec["did"])
        assert fetched == rec

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        store = MemoryStore()
        rec = await store.create_agent(_record())
        rec["reputation"] = 1.0
        fetched = await store.get_agent(rec["did"])
        fetched["capabilities"]["skills"].append("b")
        again = await store.get_agent(rec["did"])
        assert again["reputation"] == 0.0
        assert again["capabilities"]["skills"] == ["a"]

    @pytest.mark.asyncio
    async def test_duplicate_did(self):
        store = MemoryStore()
        await store.create_agent(_record())
        with pytest.raises(AgentAlreadyRegistered):
            await store.create_agent(_record(name="Other"))

    @pytest.mark.asyncio
    async def test_get_missing(self):
        assert await MemoryStore().get_agent("did:sol:devnet:none") is None

    @pytest.mark.asyncio
    async def test_list_newest_first(self):
        store = MemoryStore()
        for i in range(5):
            await store.create_agent(_record(did=f"did:sol:devnet:K{i}"))
        agents = await store.list_agents(limit=3)
        assert [a["did"] for a in agents] == [
            "did:sol:devnet:K4", "did:sol:devnet:K3", "did:sol:devnet:K2",
        ]

    @pytest.mark.asyncio
    async def test_unit_of_work_missing_agent(self):
        store = MemoryStore()
        with pytest.raises(AgentNotFound):
            async with store.unit_of_work("did:sol:devnet:none"):
                pass

    @pytest.mark.asyncio
    async def test_unknown_agents_leave_no_locks(self):
        store = MemoryStore()
        for i in range(100):
            with pytest.raises(AgentNotFound):
                async with store.unit_of_work(f"did:sol:devnet:ghost{i}"):
                    pass
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_commit_writes_score_and_event(self):
        store = MemoryStore()
        rec = await store.create_agent(_record())
        async with store.unit_of_work(rec["did"]) as uow:
            assert await uow.find_event("tx1") is None
            agent, event = await uow.commit(0.3, 0.3, "tx1", "desc")
        assert agent["reputation"] == 0.3
        assert event["reference"] == "tx1"
        assert (await store.list_events(rec["id"]))[0]["id"] == event["id"]

    @pytest.mark.asyncio
    async def test_duplicate_event_is_conflict(self):
        store = MemoryStore()
        rec = await store.create_agent(_record())
        async with store.unit_of_work(rec["did"]) as uow:
            await uow.commit(0.1, 0.1, "tx1")
        with pytest.raises(ConcurrencyConflict):
            async with store.unit_of_work(rec["did"]) as uow:
                await uow.commit(0.2, 0.1, "tx1")
        assert (await store.get_agent(rec["did"]))["reputation"] == 0.1

    @pytest.mark.asyncio
    async def test_failed_unit_of_work_writes_nothing(self):
        store = MemoryStore()
        rec = await store.create_agent(_record())
        with pytest.raises(RuntimeError):
            async with store.unit_of_work(rec["did"]):
                raise RuntimeError("boom")
        assert (await store.get_agent(rec["did"]))["reputation"] == 0.0
        assert await store.list_events(rec["id"]) == []

    @pytest.mark.asyncio
    async def test_ping(self):
        assert await MemoryStore().ping() is True
