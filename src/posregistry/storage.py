"""
posregistry.storage — Store interface for agents and reputation events.

Backends: MemoryStore (here, for development and tests) and the asyncpg
PostgreSQL ``Database`` in posregistry.database.

All reputation writes go through ``unit_of_work(did)``: the agent row is read
under an exclusive per-agent lock, and ``commit`` writes the new score and
the event together. Nothing else writes ``reputation``.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from posregistry.errors import AgentAlreadyRegistered, AgentNotFound, ConcurrencyConflict

__all__ = [
    "AgentStore",
    "UnitOfWork",
    "MemoryStore",
    "new_agent_record",
    "now_iso",
]


def now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def new_agent_record(*, did: str, owner_pubkey: str, name: str,
                     capabilities: dict, summary: Optional[str] = None,
                     endpoint: Optional[str] = None, disclosure: str = "selective",
                     metadata_cid: Optional[str] = None,
                     proof_cid: Optional[str] = None) -> dict:
    """Fresh agent row. Reputation always starts at 0."""
    now = now_iso()
    return {
        "id": str(uuid.uuid4()),
        "did": did,
        "owner_pubkey": owner_pubkey,
        "name": name,
        "summary": summary,
        "endpoint": endpoint,
        "disclosure": disclosure,
        "metadata_cid": metadata_cid,
        "proof_cid": proof_cid,
        "capabilities": capabilities,
        "reputation": 0.0,
        "created_at": now,
        "updated_at": now,
    }


# ─── Abstract interfaces ──────────────────────────────────────────

class UnitOfWork(ABC):
    """An agent row held under an exclusive lock for one read-modify-write."""

    agent: dict

    @abstractmethod
    async def find_event(self, reference: str) -> Optional[dict]:
        """Existing event for (this agent, reference), if any."""

    @abstractmethod
    async def commit(self, reputation: float, delta: float, reference: str,
                     description: Optional[str] = None) -> tuple[dict, dict]:
        """Persist the new score and append the event. Returns (agent, event)."""


class AgentStore(ABC):
    """Persistence for agents and their reputation events."""

    @abstractmethod
    async def create_agent(self, record: dict) -> dict:
        """Insert a new agent. Raises AgentAlreadyRegistered on duplicate DID."""

    @abstractmethod
    async def get_agent(self, did: str) -> Optional[dict]: ...

    @abstractmethod
    async def list_agents(self, limit: int = 25) -> list[dict]: ...

    @abstractmethod
    async def list_events(self, agent_id: str, limit: int = 50) -> list[dict]: ...

    @abstractmethod
    def unit_of_work(self, did: str):
        """Async context manager yielding a UnitOfWork. Raises AgentNotFound."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ─── Memory Store ─────────────────────────────────────────────────

class _MemoryUnitOfWork(UnitOfWork):

    def __init__(self, store: "MemoryStore", agent: dict):
        self._store = store
        self.agent = agent

    async def find_event(self, reference: str) -> Optional[dict]:
        # Yield to the loop like a real query would.
        await asyncio.sleep(0)
        key = (self.agent["id"], reference)
        event = self._store._events_by_ref.get(key)
        return copy.deepcopy(event) if event else None

    async def commit(self, reputation: float, delta: float, reference: str,
                     description: Optional[str] = None) -> tuple[dict, dict]:
        await asyncio.sleep(0)
        store = self._store
        key = (self.agent["id"], reference)
        if key in store._events_by_ref:
            raise ConcurrencyConflict(f"Event already recorded for {reference}")

        store._event_seq += 1
        event = {
            "id": store._event_seq,
            "agent_id": self.agent["id"],
            "delta": delta,
            "reference": reference,
            "description": description,
            "score_after": reputation,
            "created_at": now_iso(),
        }
        row = store._agents[self.agent["did"]]
        row["reputation"] = reputation
        row["updated_at"] = event["created_at"]
        store._events.setdefault(self.agent["id"], []).append(event)
        store._events_by_ref[key] = event
        self.agent = copy.deepcopy(row)
        return copy.deepcopy(row), copy.deepcopy(event)


class MemoryStore(AgentStore):
    """In-process store. Serializes units of work per agent with asyncio locks."""

    def __init__(self):
        self._agents: dict[str, dict] = {}
        self._events: dict[str, list[dict]] = {}
        self._events_by_ref: dict[tuple[str, str], dict] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._event_seq = 0

    async def create_agent(self, record: dict) -> dict:
        if record["did"] in self._agents:
            raise AgentAlreadyRegistered("Agent already registered for DID", {"did": record["did"]})
        self._agents[record["did"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get_agent(self, did: str) -> Optional[dict]:
        row = self._agents.get(did)
        return copy.deepcopy(row) if row else None

    async def list_agents(self, limit: int = 25) -> list[dict]:
        rows = list(self._agents.values())[::-1]
        return [copy.deepcopy(r) for r in rows[:limit]]

    async def list_events(self, agent_id: str, limit: int = 50) -> list[dict]:
        events = self._events.get(agent_id, [])[::-1]
        return [copy.deepcopy(e) for e in events[:limit]]

    @asynccontextmanager
    async def unit_of_work(self, did: str) -> AsyncIterator[UnitOfWork]:
        if did not in self._agents:
            raise AgentNotFound("Agent not found", {"did": did})
        lock = self._locks.setdefault(did, asyncio.Lock())
        async with lock:
            # Re-read under the lock; never trust a value read before it.
            row = self._agents.get(did)
            if row is None:
                raise AgentNotFound("Agent not found", {"did": did})
            yield _MemoryUnitOfWork(self, copy.deepcopy(row))
