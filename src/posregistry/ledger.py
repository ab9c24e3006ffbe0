"""
posregistry.ledger — Atomic, idempotent reputation updates.

Each settlement reference is applied to an agent at most once. The score is
re-read under the store's per-agent lock, clamped to [0, 1], and written in
the same unit of work as the event row, so concurrent settlements for one
agent never lose an update.

Usage:
    ledger = ReputationLedger(store)
    result = await ledger.apply("did:sol:devnet:Abc", 0.1, "tx1", "task settled")
    result.agent["reputation"], result.applied
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from posregistry.errors import (
    AgentNotFound, ConcurrencyConflict, InternalError, ValidationError,
)
from posregistry.storage import AgentStore

__all__ = ["ReputationLedger", "LedgerResult", "clamp_score", "MIN_SCORE", "MAX_SCORE"]

logger = logging.getLogger(__name__)

MIN_SCORE = 0.0
MAX_SCORE = 1.0
HISTORY_LIMIT = 50


def clamp_score(value: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def _agent_as_of(agent: dict, event: dict) -> dict:
    """The agent as it stood right after ``event`` was applied.

    Only reputation and updated_at change after registration. Events written
    before ``score_after`` existed fall back to the current agent.
    """
    if event.get("score_after") is None:
        return agent
    return {**agent, "reputation": event["score_after"], "updated_at": event["created_at"]}


@dataclass
class LedgerResult:
    """Outcome of one ledger application.

    ``applied`` is False when the reference had already been processed; in
    that case nothing was written and ``agent``/``event`` are the original
    result, even if later settlements have moved the score since.
    """
    agent: dict
    event: dict
    applied: bool


class ReputationLedger:
    """The only writer of agent reputation.

    Args:
        store: Persistence backend providing per-agent units of work.
        max_attempts: Attempts when the store reports a concurrent conflict.
    """

    def __init__(self, store: AgentStore, *, max_attempts: int = 3):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts

    async def apply(self, agent_did: str, delta: float, reference: str,
                    description: Optional[str] = None) -> LedgerResult:
        """Apply ``delta`` for settlement ``reference``; a replay returns the first result."""
        if not isinstance(delta, (int, float)) or not math.isfinite(delta):
            raise ValidationError("Reputation delta must be a finite number")
        if not reference:
            raise ValidationError("Settlement reference is required")

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._apply_once(agent_did, float(delta), reference, description)
            except ConcurrencyConflict as e:
                logger.warning(
                    "Concurrent reputation update for %s (attempt %d/%d): %s",
                    agent_did, attempt, self.max_attempts, e,
                    extra={"event": "ledger_conflict", "did": agent_did, "reference": reference},
                )

        raise InternalError("Reputation update failed after repeated conflicts")

    async def _apply_once(self, agent_did: str, delta: float, reference: str,
                          description: Optional[str]) -> LedgerResult:
        async with self.store.unit_of_work(agent_did) as uow:
            existing = await uow.find_event(reference)
            if existing is not None:
                logger.info(
                    "Settlement %s already applied to %s", reference, agent_did,
                    extra={"event": "ledger_replay", "did": agent_did, "reference": reference},
                )
                return LedgerResult(agent=_agent_as_of(uow.agent, existing),
                                    event=existing, applied=False)

            current = float(uow.agent["reputation"])
            reputation = clamp_score(current + delta)
            agent, event = await uow.commit(reputation, delta, reference, description)

        logger.info(
            "Reputation updated",
            extra={
                "event": "reputation_updated", "did": agent_did, "delta": delta,
                "reference": reference, "reputation": agent["reputation"],
            },
        )
        return LedgerResult(agent=agent, event=event, applied=True)

    async def history(self, agent_did: str, limit: int = HISTORY_LIMIT) -> tuple[dict, list[dict]]:
        """Agent and its most recent events, newest first."""
        agent = await self.store.get_agent(agent_did)
        if agent is None:
            raise AgentNotFound("Agent not found", {"did": agent_did})
        events = await self.store.list_events(agent["id"], limit=limit)
        return agent, events
