"""
posregistry.errors — Error taxonomy shared by every layer of the registry.

Each error carries a stable machine-readable ``kind`` and the HTTP status the
API answers with. Verification errors are raised at the boundary and never
reach the scoring or ledger layers.
"""

from typing import Any, Optional

__all__ = [
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
    "PayloadTooLarge",
    "RateLimited",
    "ConcurrencyConflict",
]


class RegistryError(Exception):
    """Base class for all registry errors."""

    kind: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str = "", details: Optional[dict[str, Any]] = None):
        self.message = message or self.__class__.__doc__ or self.kind
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(RegistryError):
    """Malformed request body or identifier."""
    kind = "validation_error"
    status_code = 400


class AuthenticationError(RegistryError):
    """Bad or missing signature."""
    kind = "authentication_error"
    status_code = 401


class ConflictError(RegistryError):
    """Request conflicts with current state."""
    kind = "conflict"
    status_code = 409


class NotFoundError(RegistryError):
    """Resource not found."""
    kind = "not_found"
    status_code = 404


class InternalError(RegistryError):
    """Internal server error."""
    kind = "internal_error"
    status_code = 500


# ─── Specific errors ──────────────────────────────────────────────

class MalformedIdentifier(ValidationError):
    """Invalid DID format."""


class InvalidEncoding(RegistryError):
    """Signature or public key is not valid base58 of the expected length."""
    kind = "invalid_encoding"
    status_code = 401


class MissingSignature(AuthenticationError):
    """Missing x402 signature header."""


class InvalidSignature(AuthenticationError):
    """Invalid x402 signature."""


class AgentNotFound(NotFoundError):
    """Agent not found."""


class AgentAlreadyRegistered(ConflictError):
    """Agent already registered for DID."""


class SettlementNotConfirmed(ConflictError):
    """Settlement not confirmed on-chain."""


class PayloadTooLarge(RegistryError):
    """Request body too large."""
    kind = "payload_too_large"
    status_code = 413


class RateLimited(RegistryError):
    """Rate limit exceeded. Try again later."""
    kind = "rate_limited"
    status_code = 429


class ConcurrencyConflict(RegistryError):
    """Concurrent update detected; the unit of work may be retried."""
    kind = "concurrency_conflict"
    status_code = 500
