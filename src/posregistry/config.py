"""
posregistry.config — Process configuration, built once at startup.

All settings come from environment variables:

    DATABASE_URL             postgresql://... (required)
    X402_WEBHOOK_SECRET      shared secret for settlement webhooks (required)
    SOLANA_CLUSTER           devnet | testnet | mainnet-beta (default devnet)
    SOLANA_RPC_URL           overrides the cluster's public RPC endpoint
    SETTLEMENT_BACKEND       rpc | static (default rpc)
    SETTLEMENT_TIMEOUT       per-attempt RPC timeout in seconds (default 5)
    SETTLEMENT_MAX_ATTEMPTS  RPC attempts before failing closed (default 3)
    SETTLEMENT_BACKOFF       base backoff in seconds (default 0.25)
    LEDGER_MAX_ATTEMPTS      ledger retries on concurrent conflict (default 3)
    PORT                     HTTP port (default 3001)
    LOG_LEVEL                default INFO
    ALLOWED_ORIGINS          comma-separated CORS origins
    POSREGISTRY_PRODUCTION   any value disables /docs and /redoc

The resulting :class:`RegistryConfig` is passed explicitly to the components
that need it. Nothing reads the environment after startup.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

__all__ = ["RegistryConfig", "ConfigError", "load_config", "CLUSTER_RPC_URLS"]

REQUIRED_VARS = ("DATABASE_URL", "X402_WEBHOOK_SECRET")

CLUSTER_RPC_URLS = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class RegistryConfig:
    database_url: str
    webhook_secret: str
    solana_cluster: str = "devnet"
    solana_rpc_url: str = ""
    settlement_backend: str = "rpc"
    settlement_timeout: float = 5.0
    settlement_max_attempts: int = 3
    settlement_backoff: float = 0.25
    ledger_max_attempts: int = 3
    port: int = 3001
    log_level: str = "INFO"
    allowed_origins: tuple[str, ...] = field(default_factory=tuple)
    production: bool = False

    @property
    def rpc_url(self) -> str:
        """Explicit RPC URL, or the public endpoint of the configured cluster."""
        if self.solana_rpc_url:
            return self.solana_rpc_url
        try:
            return CLUSTER_RPC_URLS[self.solana_cluster]
        except KeyError:
            raise ConfigError(f"Unknown SOLANA_CLUSTER '{self.solana_cluster}'") from None


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{raw}'") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> RegistryConfig:
    """Build configuration from the environment (``os.environ`` by default)."""
    env = os.environ if environ is None else environ

    missing = [name for name in REQUIRED_VARS if not env.get(name)]
    if missing:
        raise ConfigError(f"Missing required environment variable {', '.join(missing)}")

    backend = env.get("SETTLEMENT_BACKEND", "rpc").lower()
    if backend not in ("rpc", "static"):
        raise ConfigError(f"SETTLEMENT_BACKEND must be 'rpc' or 'static', got '{backend}'")

    origins = tuple(o.strip() for o in env.get("ALLOWED_ORIGINS", "").split(",") if o.strip())

    config = RegistryConfig(
        database_url=env["DATABASE_URL"],
        webhook_secret=env["X402_WEBHOOK_SECRET"],
        solana_cluster=env.get("SOLANA_CLUSTER", "devnet") or "devnet",
        solana_rpc_url=env.get("SOLANA_RPC_URL", ""),
        settlement_backend=backend,
        settlement_timeout=_number(env, "SETTLEMENT_TIMEOUT", 5.0, float),
        settlement_max_attempts=_number(env, "SETTLEMENT_MAX_ATTEMPTS", 3, int),
        settlement_backoff=_number(env, "SETTLEMENT_BACKOFF", 0.25, float),
        ledger_max_attempts=_number(env, "LEDGER_MAX_ATTEMPTS", 3, int),
        port=_number(env, "PORT", 3001, int),
        log_level=env.get("LOG_LEVEL", "INFO"),
        allowed_origins=origins,
        production=bool(env.get("POSREGISTRY_PRODUCTION")),
    )
    # Fail at startup, not on the first settlement.
    config.rpc_url
    return config
