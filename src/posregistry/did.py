"""Identity verification for agent DIDs.

Expected format: ``did:<method>[:<network>...]:<base58 owner key>``, e.g.
``did:sol:devnet:Abc123`` or ``did:solana:Abc123``.
"""

from posregistry.errors import MalformedIdentifier

__all__ = ["extract_owner_key"]


def extract_owner_key(did: str) -> str:
    """Return the owner public key embedded as the final DID segment.

    Raises MalformedIdentifier if the DID has fewer than three segments or
    the final segment is empty. No cryptographic work happens here.
    """
    segments = did.split(":")
    if len(segments) < 3:
        raise MalformedIdentifier("Invalid DID format", {"did": did})

    owner_key = segments[-1]
    if not owner_key:
        raise MalformedIdentifier("Missing public key segment in DID", {"did": did})

    return owner_key
