"""
posregistry.signature — Wallet signature authentication (Ed25519, base58).

Solana wallets sign arbitrary messages with the account's Ed25519 key and
hand back a base58 signature; the account address is the base58 public key.
"""

from datetime import datetime, timezone
from typing import Optional

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from posregistry.errors import InvalidEncoding

__all__ = [
    "verify_wallet_signature",
    "sign_message",
    "generate_wallet",
    "build_registration_message",
    "PUBLIC_KEY_LENGTH",
    "SIGNATURE_LENGTH",
]

PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


def _decode(value: str, expected_length: int, what: str) -> bytes:
    try:
        raw = base58.b58decode(value)
    except ValueError as e:
        raise InvalidEncoding(f"{what} is not valid base58") from e
    if len(raw) != expected_length:
        raise InvalidEncoding(
            f"{what} must decode to {expected_length} bytes, got {len(raw)}"
        )
    return raw


def verify_wallet_signature(message: str, signature: str, public_key: str) -> bool:
    """Check that ``signature`` over the UTF-8 bytes of ``message`` was made by ``public_key``.

    Returns False for a well-formed signature that does not verify.
    Raises InvalidEncoding if either value is not base58 of the right length.
    """
    sig_bytes = _decode(signature, SIGNATURE_LENGTH, "Signature")
    key_bytes = _decode(public_key, PUBLIC_KEY_LENGTH, "Public key")

    try:
        VerifyKey(key_bytes).verify(message.encode("utf-8"), sig_bytes)
    except BadSignatureError:
        return False
    return True


def sign_message(signing_key: SigningKey, message: str) -> str:
    """Sign a message the way a wallet does; returns base58 signature."""
    return base58.b58encode(signing_key.sign(message.encode("utf-8")).signature).decode()


def generate_wallet() -> tuple[SigningKey, str]:
    """Generate a keypair; returns (signing key, base58 address)."""
    sk = SigningKey.generate()
    return sk, base58.b58encode(sk.verify_key.encode()).decode()


def build_registration_message(did: str, name: str, timestamp: Optional[str] = None) -> str:
    """Registration intent an owner signs before registering an agent."""
    ts = timestamp or datetime.now(timezone.utc).isoformat()
    return f"Register agent {name} for {did} at {ts}"
