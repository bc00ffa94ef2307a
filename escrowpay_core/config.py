"""
TOML-based configuration for the EscrowPay service.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from escrowpay_core.config import load_config
    cfg = load_config("escrowpay.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class EscrowConfig:
    """Escrow policy settings."""
    environment: str = "development"   # "production" disables every mock path
    network: str = "testnet"           # "mainnet", "testnet" or "devnet"
    max_amount: str = "100000"         # ceiling per escrow, in XRP
    # A live escrow still unsettled this many seconds after FinishAfter is
    # marked expired locally.
    expiry_grace_seconds: int = 86_400
    default_purpose: str = "Booking payment"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@dataclass
class ConditionsConfig:
    """Crypto-condition generator selection."""
    strategy: str = "preimage-sha256"  # or "mock" (non-production only)
    preimage_bytes: int = 32
    allow_mock_fallback: bool = False


@dataclass
class SigningConfig:
    """Delegated-signing provider (Xaman platform API)."""
    base_url: str = "https://xumm.app/api/v1/platform"
    api_key: str = ""
    api_secret: str = ""
    expire_minutes: int = 10           # how long a signing request stays answerable
    request_timeout: float = 15.0      # per HTTP call, seconds
    # Unanswered signing requests older than this are reported as timed out.
    # 0 = derive from expire_minutes.
    signing_window_seconds: int = 0

    @property
    def window_seconds(self) -> int:
        return self.signing_window_seconds or self.expire_minutes * 60


@dataclass
class LedgerConfig:
    """rippled JSON-RPC endpoint used for sequence and validation lookups."""
    rpc_url: str = "https://s.altnet.rippletest.net:51234/"
    request_timeout: float = 15.0


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/escrowpay.db"
    # Hex-encoded 32-byte key for encrypting fulfillments at rest.
    secret_key: str = ""


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class EscrowPayConfig:
    """Top-level configuration container."""
    escrow: EscrowConfig = field(default_factory=EscrowConfig)
    conditions: ConditionsConfig = field(default_factory=ConditionsConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> EscrowPayConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping (selected):
        ESCROWPAY_ENV             -> escrow.environment
        ESCROWPAY_NETWORK         -> escrow.network
        ESCROWPAY_MAX_AMOUNT      -> escrow.max_amount
        ESCROWPAY_CONDITIONS      -> conditions.strategy
        XUMM_APIKEY               -> signing.api_key
        XUMM_APISECRET            -> signing.api_secret
        ESCROWPAY_RPC_URL         -> ledger.rpc_url
        ESCROWPAY_API_PORT        -> api.port
        ESCROWPAY_API_KEY         -> api.api_key
        ESCROWPAY_DB_PATH         -> storage.path
        ESCROWPAY_SECRET_KEY      -> storage.secret_key
        ESCROWPAY_LOG_LEVEL       -> logging.level
        ESCROWPAY_LOG_FMT         -> logging.format
    """
    cfg = EscrowPayConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("escrow", cfg.escrow),
                ("conditions", cfg.conditions),
                ("signing", cfg.signing),
                ("ledger", cfg.ledger),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("ESCROWPAY_ENV"):
        cfg.escrow.environment = v
    if v := os.environ.get("ESCROWPAY_NETWORK"):
        cfg.escrow.network = v
    if v := os.environ.get("ESCROWPAY_MAX_AMOUNT"):
        cfg.escrow.max_amount = v
    if v := os.environ.get("ESCROWPAY_CONDITIONS"):
        cfg.conditions.strategy = v
    if v := os.environ.get("XUMM_APIKEY"):
        cfg.signing.api_key = v
    if v := os.environ.get("XUMM_APISECRET"):
        cfg.signing.api_secret = v
    if v := os.environ.get("ESCROWPAY_RPC_URL"):
        cfg.ledger.rpc_url = v
    if v := os.environ.get("ESCROWPAY_API_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("ESCROWPAY_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("ESCROWPAY_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("ESCROWPAY_SECRET_KEY"):
        cfg.storage.secret_key = v
    if v := os.environ.get("ESCROWPAY_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("ESCROWPAY_LOG_FMT"):
        cfg.logging.format = v

    return cfg
