"""
posregistry.webhook — Authenticity checks for x402 settlement notifications.

The notifying service signs the compact JSON body with HMAC-SHA256 under a
pre-shared secret and sends the hex digest in the ``X-402-Signature`` header.
"""

import hashlib
import hmac
import json
from typing import Any, Optional

from posregistry.errors import InvalidSignature, MissingSignature

__all__ = [
    "SIGNATURE_HEADER",
    "canonicalize_payload",
    "sign_webhook_payload",
    "verify_webhook_signature",
]

SIGNATURE_HEADER = "X-402-Signature"


def canonicalize_payload(payload: Any) -> bytes:
    """Deterministic byte form of a webhook payload.

    Bytes and strings are taken as-is. Anything else is serialized as compact
    JSON in insertion order, which is what the sender signs.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_webhook_payload(payload: Any, secret: str) -> str:
    """HMAC-SHA256 hex digest of the canonical payload."""
    return hmac.new(secret.encode("utf-8"), canonicalize_payload(payload), hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: Any, signature: Optional[str], secret: str) -> None:
    """Raise unless ``signature`` is the HMAC of ``payload`` under ``secret``."""
    if not signature:
        raise MissingSignature("Missing x402 signature header")

    expected = sign_webhook_payload(payload, secret)
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(expected.encode("ascii"), provided):
        raise InvalidSignature("Invalid x402 signature")
