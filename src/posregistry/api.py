"""
posregistry API — REST surface of the proof-of-service agent registry.

  POST /api/agents              — Register an agent (wallet-signed)
  GET  /api/agents              — Recent agents, newest first
  GET  /api/agents/{did}        — Agent detail + recent reputation events
  POST /api/reputation/update   — x402 settlement webhook (HMAC-signed)
  GET  /api/reputation/{did}    — Score and reputation history
  GET  /health                  — Health check

Collaborators (store, settlement gateway, pinning, attestation) live on
``app.state``; create_app() wires them from a RegistryConfig.
"""

import json
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Query, Request
from pydantic import ValidationError as PydanticValidationError

from posregistry import __version__
from posregistry.config import RegistryConfig, load_config
from posregistry.did import extract_owner_key
from posregistry.errors import (
    AgentAlreadyRegistered, AuthenticationError, InvalidEncoding, SettlementNotConfirmed,
    ValidationError,
)
from posregistry.ledger import HISTORY_LIMIT, ReputationLedger
from posregistry.models import (
    AgentDetailResponse, AgentEnvelope, AgentListResponse, AgentRegisterRequest,
    HealthResponse, ReputationHistoryResponse, ReputationUpdateResponse,
    SettlementNotification,
)
from posregistry.scoring import derive_delta
from posregistry.security import apply_security, limiter, logger, configure_logging
from posregistry.services import (
    AttestationService, LocalAttestationService, LocalPinningService, PinningService,
    generate_cid,
)
from posregistry.settlement import SettlementGateway, gateway_from_config
from posregistry.signature import verify_wallet_signature
from posregistry.storage import AgentStore, new_agent_record
from posregistry.webhook import SIGNATURE_HEADER, verify_webhook_signature

router = APIRouter(prefix="/api")
health_router = APIRouter()


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

@router.post("/agents", response_model=AgentEnvelope, status_code=201, tags=["agents"])
@limiter.limit("10/minute")
async def register_agent(request: Request, body: AgentRegisterRequest):
    """Register an agent whose owner signed ``message`` with the key in its DID."""
    state = request.app.state
    owner_pubkey = extract_owner_key(body.did)

    try:
        valid = verify_wallet_signature(body.message, body.signature, owner_pubkey)
    except InvalidEncoding as e:
        raise AuthenticationError("Invalid wallet signature", {"reason": e.message}) from e
    if not valid:
        raise AuthenticationError("Invalid wallet signature")

    # create_agent still enforces uniqueness; this only spares pinning and attestation.
    if await state.store.get_agent(body.did) is not None:
        raise AgentAlreadyRegistered("Agent already registered for DID", {"did": body.did})

    capabilities = body.capabilities.model_dump()
    metadata_cid = body.metadata_cid or await state.pinning.pin({
        "did": body.did,
        "name": body.name,
        "summary": body.summary,
        "endpoint": body.endpoint,
        "capabilities": capabilities,
    })
    proof_cid = body.proof_cid or await state.attestation.attest({
        "did": body.did,
        "capability_hash": generate_cid(capabilities),
    })

    agent = await state.store.create_agent(new_agent_record(
        did=body.did,
        owner_pubkey=owner_pubkey,
        name=body.name,
        summary=body.summary,
        endpoint=body.endpoint,
        disclosure=body.disclosure.value,
        metadata_cid=metadata_cid,
        proof_cid=proof_cid,
        capabilities=capabilities,
    ))
    logger.info("Agent registered", extra={"did": agent["did"]})
    return {"agent": agent}


@router.get("/agents", response_model=AgentListResponse, tags=["agents"])
async def list_agents(request: Request, limit: int = Query(25, ge=1, le=100)):
    """Recently registered agents, newest first."""
    agents = await request.app.state.store.list_agents(limit=limit)
    return {"agents": agents}


@router.get("/agents/{did}", response_model=AgentDetailResponse, tags=["agents"])
async def get_agent(request: Request, did: str):
    agent, events = await request.app.state.ledger.history(did, limit=HISTORY_LIMIT)
    return {"agent": agent, "events": events}


# ---------------------------------------------------------------------------
# Reputation
# ---------------------------------------------------------------------------

@router.post("/reputation/update", response_model=ReputationUpdateResponse, tags=["reputation"])
async def update_reputation(request: Request):
    """Apply a settled x402 payment to the agent's reputation.

    Order matters: the HMAC is checked before the body is trusted, and the
    ledger of record is consulted before any score changes.
    """
    state = request.app.state
    raw = await request.body()
    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None

    verify_webhook_signature(payload, request.headers.get(SIGNATURE_HEADER),
                             state.config.webhook_secret)

    try:
        notification = SettlementNotification.model_validate(payload)
    except PydanticValidationError as e:
        issues = [{"loc": [str(p) for p in err["loc"]], "msg": err["msg"], "type": err["type"]}
                  for err in e.errors()]
        raise ValidationError("Invalid payload", {"issues": issues}) from None

    status = await state.gateway.get_status(notification.x402_txn_id)
    if not status.authorizes:
        raise SettlementNotConfirmed(
            "Settlement not confirmed on-chain",
            {"reference": notification.x402_txn_id, "status": status.value},
        )

    delta = derive_delta(notification.task_outcome, notification.payment_amount)
    result = await state.ledger.apply(
        notification.agent_did, delta, notification.x402_txn_id, notification.description,
    )
    return {
        "message": "Reputation updated" if result.applied else "Settlement already applied",
        "agent": result.agent,
        "event": result.event,
        "applied": result.applied,
    }


@router.get("/reputation/{did}", response_model=ReputationHistoryResponse, tags=["reputation"])
async def reputation_history(request: Request, did: str):
    agent, events = await request.app.state.ledger.history(did, limit=HISTORY_LIMIT)
    return {"did": agent["did"], "score": agent["reputation"], "events": events}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@health_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    store: AgentStore = request.app.state.store
    try:
        database = "connected" if await store.ping() else "error"
    except Exception as e:
        logger.warning("Health check database ping failed: %s", type(e).__name__)
        database = f"error: {type(e).__name__}"
    return {
        "status": "ok" if database == "connected" else "degraded",
        "version": __version__,
        "database": database,
    }


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[RegistryConfig] = None,
    *,
    store: Optional[AgentStore] = None,
    gateway: Optional[SettlementGateway] = None,
    pinning: Optional[PinningService] = None,
    attestation: Optional[AttestationService] = None,
) -> FastAPI:
    """Create the registry app.

    Without an explicit ``store`` the app opens a PostgreSQL pool from
    ``config.database_url`` on startup and closes it on shutdown.
    """
    config = config or load_config()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_db = None
        if app.state.store is None:
            from posregistry.database import Database
            owned_db = Database(config.database_url)
            await owned_db.connect()
            app.state.store = owned_db
            app.state.ledger = ReputationLedger(owned_db, max_attempts=config.ledger_max_attempts)
        logger.info("Registry started", extra={"cluster": config.solana_cluster})
        yield
        await app.state.gateway.aclose()
        if owned_db is not None:
            await owned_db.close()

    app = FastAPI(
        title="Proof-of-Service Agent Registry",
        description="Agent identities with settlement-driven reputation",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if config.production else "/docs",
        redoc_url=None if config.production else "/redoc",
    )
    app.state.config = config
    app.state.store = store
    app.state.ledger = (
        ReputationLedger(store, max_attempts=config.ledger_max_attempts) if store is not None else None
    )
    app.state.gateway = gateway or gateway_from_config(config)
    app.state.pinning = pinning or LocalPinningService()
    app.state.attestation = attestation or LocalAttestationService()

    apply_security(app, config.allowed_origins)
    app.include_router(health_router)
    app.include_router(router)
    return app
