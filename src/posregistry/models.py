"""
posregistry.models — Request and response bodies for the registry API.

Field names are snake_case in Python and camelCase on the wire.
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from posregistry.scoring import TaskOutcome


class Disclosure(str, Enum):
    PUBLIC = "public"
    SELECTIVE = "selective"
    PRIVATE = "private"


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class Capabilities(_Wire):
    skills: list[str] = Field(..., min_length=1)
    success_rate: float = Field(..., ge=0, le=1)
    latency_ms: float = Field(..., ge=0)

    @field_validator("skills")
    @classmethod
    def skills_not_blank(cls, v: list[str]) -> list[str]:
        skills = [s.strip() for s in v]
        if any(not s for s in skills):
            raise ValueError("Skill tags cannot be empty")
        # Ordered set: keep first occurrence.
        return list(dict.fromkeys(skills))


class AgentRegisterRequest(_Wire):
    did: str = Field(..., min_length=1, max_length=200)
    name: str = Field(..., min_length=1, max_length=100)
    summary: Optional[str] = Field(None, max_length=1000)
    endpoint: Optional[str] = Field(None, max_length=500)
    disclosure: Disclosure = Disclosure.SELECTIVE
    metadata_cid: Optional[str] = Field(None, max_length=200)
    proof_cid: Optional[str] = Field(None, max_length=200)
    capabilities: Capabilities
    message: str = Field(..., min_length=1, max_length=2000)
    signature: str = Field(..., min_length=1, max_length=200)

    @field_validator("did", "name")
    @classmethod
    def no_null_bytes(cls, v: str) -> str:
        if "\x00" in v:
            raise ValueError("Null bytes not allowed")
        return v.strip()


class SettlementNotification(BaseModel):
    """x402 settlement webhook body."""
    model_config = ConfigDict(populate_by_name=True)

    x402_txn_id: str = Field(..., alias="x402TxnId", min_length=1, max_length=200)
    agent_did: str = Field(..., alias="agentDid", min_length=1, max_length=200)
    task_outcome: TaskOutcome = Field(..., alias="taskOutcome")
    # Claimed, not trusted; the scoring engine sanitizes it.
    payment_amount: Union[float, str] = Field(..., alias="paymentAmount")
    description: Optional[str] = Field(None, max_length=1000)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class AgentOut(_Wire):
    id: str
    did: str
    owner_pubkey: str
    name: str
    summary: Optional[str] = None
    endpoint: Optional[str] = None
    disclosure: str = Disclosure.SELECTIVE.value
    metadata_cid: Optional[str] = None
    proof_cid: Optional[str] = None
    capabilities: Capabilities
    reputation: float = 0.0
    created_at: str
    updated_at: str


class ReputationEventOut(_Wire):
    id: Union[int, str]
    agent_id: str
    delta: float
    reference: str
    description: Optional[str] = None
    score_after: Optional[float] = None
    created_at: str


class AgentEnvelope(_Wire):
    agent: AgentOut


class AgentListResponse(_Wire):
    agents: list[AgentOut]


class AgentDetailResponse(_Wire):
    agent: AgentOut
    events: list[ReputationEventOut]


class ReputationUpdateResponse(_Wire):
    message: str
    agent: AgentOut
    event: ReputationEventOut
    applied: bool


class ReputationHistoryResponse(_Wire):
    did: str
    score: float
    events: list[ReputationEventOut]


class HealthResponse(_Wire):
    status: str = "ok"
    version: str
    database: str
