"""
posregistry.settlement — Confirms x402 settlements against the ledger of record.

Only a FINALIZED settlement authorizes a reputation change. Lookup failures
(transport errors, timeouts, RPC errors) are retried with exponential backoff
and then reported as NOT_FOUND: an unreachable ledger never confirms anything.

Usage:
    gateway = SolanaSettlementGateway("https://api.devnet.solana.com")
    status = await gateway.get_status(tx_signature)
    if status.authorizes:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import httpx

from posregistry.config import RegistryConfig

__all__ = [
    "SettlementStatus",
    "SettlementGateway",
    "SolanaSettlementGateway",
    "StaticSettlementGateway",
    "SettlementLookupError",
    "gateway_from_config",
]

logger = logging.getLogger(__name__)


class SettlementStatus(str, Enum):
    FINALIZED = "finalized"
    PENDING = "pending"
    NOT_FOUND = "not_found"

    @property
    def authorizes(self) -> bool:
        return self is SettlementStatus.FINALIZED


class SettlementLookupError(Exception):
    """A single lookup attempt failed; the outcome is unknown."""


class SettlementGateway(ABC):
    """Read-only view of the settlement ledger. Safe to call repeatedly."""

    @abstractmethod
    async def get_status(self, reference: str) -> SettlementStatus:
        ...

    async def aclose(self) -> None:
        return None


class SolanaSettlementGateway(SettlementGateway):
    """Looks up transaction signatures via Solana JSON-RPC ``getSignatureStatuses``.

    Args:
        rpc_url: JSON-RPC endpoint.
        timeout: Per-attempt timeout in seconds.
        max_attempts: Attempts before failing closed.
        backoff: Base delay; attempt n waits ``backoff * 2**n`` before retrying.
        client: Optional preconfigured httpx.AsyncClient (tests inject a mock transport).
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff: float = 0.25,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_status(self, reference: str) -> SettlementStatus:
        if not reference:
            return SettlementStatus.NOT_FOUND

        for attempt in range(self.max_attempts):
            try:
                return await self._lookup(reference)
            except SettlementLookupError as e:
                logger.warning(
                    "Settlement lookup failed (attempt %d/%d) for %s: %s",
                    attempt + 1, self.max_attempts, reference, e,
                    extra={"event": "settlement_lookup_failed", "reference": reference},
                )
                if attempt + 1 < self.max_attempts:
                    await asyncio.sleep(self.backoff * 2 ** attempt)

        logger.error(
            "Settlement lookup exhausted retries for %s; treating as not found", reference,
            extra={"event": "settlement_lookup_exhausted", "reference": reference},
        )
        return SettlementStatus.NOT_FOUND

    async def _lookup(self, reference: str) -> SettlementStatus:
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getSignatureStatuses",
            # Settlements can predate the notification by any amount of time.
            "params": [[reference], {"searchTransactionHistory": True}],
        }
        try:
            resp = await self._get_client().post(self.rpc_url, json=body, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SettlementLookupError(f"{type(e).__name__}: {e}") from e

        if not isinstance(data, dict):
            raise SettlementLookupError("malformed RPC response")
        if data.get("error"):
            raise SettlementLookupError(f"RPC error: {data['error']}")

        try:
            entry = data["result"]["value"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise SettlementLookupError("malformed RPC response") from e
        if entry is not None and not isinstance(entry, dict):
            raise SettlementLookupError("malformed RPC response")

        return _status_from_entry(entry)


def _status_from_entry(entry: Optional[dict]) -> SettlementStatus:
    if not entry:
        return SettlementStatus.NOT_FOUND
    # A landed transaction that failed did not move any funds.
    if entry.get("err"):
        return SettlementStatus.NOT_FOUND
    if entry.get("confirmationStatus") == "finalized":
        return SettlementStatus.FINALIZED
    return SettlementStatus.PENDING


class StaticSettlementGateway(SettlementGateway):
    """Fixed reference → status table for local development and tests."""

    def __init__(self, statuses: Optional[dict[str, SettlementStatus]] = None,
                 default: SettlementStatus = SettlementStatus.NOT_FOUND):
        self.statuses = dict(statuses or {})
        self.default = default
        self.lookups: list[str] = []

    def set_status(self, reference: str, status: SettlementStatus) -> None:
        self.statuses[reference] = status

    async def get_status(self, reference: str) -> SettlementStatus:
        self.lookups.append(reference)
        if not reference:
            return SettlementStatus.NOT_FOUND
        return self.statuses.get(reference, self.default)


def gateway_from_config(config: RegistryConfig) -> SettlementGateway:
    """Build the configured gateway."""
    if config.settlement_backend == "static":
        logger.warning("Using static settlement gateway; every settlement is finalized")
        return StaticSettlementGateway(default=SettlementStatus.FINALIZED)
    return SolanaSettlementGateway(
        config.rpc_url,
        timeout=config.settlement_timeout,
        max_attempts=config.settlement_max_attempts,
        backoff=config.settlement_backoff,
    )
