"""
posregistry.services — External collaborators used during registration.

Metadata pinning and selective-disclosure attestation are opaque to the
registry: each takes a payload and returns an identifier. The bundled
implementations derive IPFS-style identifiers locally without contacting
any pinning or proving service.
"""

import hashlib
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import base58

__all__ = [
    "generate_cid",
    "PinningService",
    "AttestationService",
    "LocalPinningService",
    "LocalAttestationService",
]

logger = logging.getLogger(__name__)


def generate_cid(payload: Optional[Any] = None) -> str:
    """Base58 SHA-256 digest of the compact JSON payload (random when None)."""
    if payload is None:
        digest = os.urandom(32)
    else:
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
        digest = hashlib.sha256(data.encode("utf-8")).digest()
    return base58.b58encode(digest).decode()


class PinningService(ABC):
    @abstractmethod
    async def pin(self, payload: dict) -> str:
        """Pin agent metadata; returns its content identifier."""


class AttestationService(ABC):
    @abstractmethod
    async def attest(self, request: dict) -> str:
        """Produce a selective-disclosure attestation; returns its identifier."""


class LocalPinningService(PinningService):

    async def pin(self, payload: dict) -> str:
        cid = generate_cid({**payload, "timestamp": int(time.time() * 1000)})
        logger.debug("Pinned agent metadata", extra={"cid": cid, "did": payload.get("did")})
        return cid


class LocalAttestationService(AttestationService):

    async def attest(self, request: dict) -> str:
        proof_cid = generate_cid({**request, "timestamp": int(time.time() * 1000)})
        logger.debug("Generated selective disclosure proof",
                     extra={"proof_cid": proof_cid, "did": request.get("did")})
        return proof_cid
