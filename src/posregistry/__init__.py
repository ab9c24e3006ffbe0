"""posregistry — Proof-of-service agent registry with settlement-driven reputation."""

__version__ = "0.1.0"

from posregistry.config import RegistryConfig, ConfigError, load_config
from posregistry.did import extract_owner_key
from posregistry.errors import (
    RegistryError, ValidationError, AuthenticationError, ConflictError,
    NotFoundError, InternalError,
    MalformedIdentifier, InvalidEncoding, MissingSignature, InvalidSignature,
    AgentNotFound, AgentAlreadyRegistered, SettlementNotConfirmed,
)
from posregistry.ledger import ReputationLedger, LedgerResult, clamp_score
from posregistry.scoring import TaskOutcome, derive_delta
from posregistry.settlement import (
    SettlementStatus, SettlementGateway, SolanaSettlementGateway, StaticSettlementGateway,
)
from posregistry.signature import verify_wallet_signature, build_registration_message
from posregistry.storage import AgentStore, MemoryStore
from posregistry.webhook import sign_webhook_payload, verify_webhook_signature

__all__ = [
    "RegistryConfig",
    "ConfigError",
    "load_config",
    "extract_owner_key",
    "RegistryError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "NotFoundError",
    "InternalError",
    "MalformedIdentifier",
    "InvalidEncoding",
    "MissingSignature",
    "InvalidSignature",
    "AgentNotFound",
    "AgentAlreadyRegistered",
    "SettlementNotConfirmed",
    "ReputationLedger",
    "LedgerResult",
    "clamp_score",
    "TaskOutcome",
    "derive_delta",
    "SettlementStatus",
    "SettlementGateway",
    "SolanaSettlementGateway",
    "StaticSettlementGateway",
    "verify_wallet_signature",
    "build_registration_message",
    "AgentStore",
    "MemoryStore",
    "sign_webhook_payload",
    "verify_webhook_signature",
]
