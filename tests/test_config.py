"""
Tests for escrowpay_core.config — TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - TOML parsing and section merging
  - Environment variable overrides (precedence over TOML)
  - _merge helper edge cases
  - Signing window derivation
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from escrowpay_core.config import (
    APIConfig,
    ConditionsConfig,
    EscrowConfig,
    EscrowPayConfig,
    LedgerConfig,
    LoggingConfig,
    SigningConfig,
    StorageConfig,
    _merge,
    load_config,
)

_ENV_KEYS = [
    "ESCROWPAY_ENV", "ESCROWPAY_NETWORK", "ESCROWPAY_MAX_AMOUNT", "ESCROWPAY_CONDITIONS",
    "XUMM_APIKEY", "XUMM_APISECRET", "ESCROWPAY_RPC_URL", "ESCROWPAY_API_PORT",
    "ESCROWPAY_API_KEY", "ESCROWPAY_DB_PATH", "ESCROWPAY_SECRET_KEY",
    "ESCROWPAY_LOG_LEVEL", "ESCROWPAY_LOG_FMT",
]


def _clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in _ENV_KEYS}


def _write_toml(content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(textwrap.dedent(content))
    return f.name


# ═══════════════════════════════════════════════════════════════════
#  Defaults
# ═══════════════════════════════════════════════════════════════════

class TestDefaults(unittest.TestCase):

    def test_escrow_defaults(self):
        e = EscrowConfig()
        self.assertEqual(e.environment, "development")
        self.assertFalse(e.is_production)
        self.assertEqual(e.network, "testnet")
        self.assertEqual(e.max_amount, "100000")
        self.assertEqual(e.expiry_grace_seconds, 86_400)

    def test_production_flag_case_insensitive(self):
        self.assertTrue(EscrowConfig(environment="Production").is_production)

    def test_conditions_defaults(self):
        c = ConditionsConfig()
        self.assertEqual(c.strategy, "preimage-sha256")
        self.assertEqual(c.preimage_bytes, 32)
        self.assertFalse(c.allow_mock_fallback)

    def test_signing_defaults(self):
        s = SigningConfig()
        self.assertEqual(s.base_url, "https://xumm.app/api/v1/platform")
        self.assertEqual(s.api_key, "")
        self.assertEqual(s.expire_minutes, 10)
        self.assertEqual(s.window_seconds, 600)

    def test_ledger_defaults(self):
        self.assertTrue(LedgerConfig().rpc_url.startswith("https://"))

    def test_api_defaults(self):
        a = APIConfig()
        self.assertTrue(a.enabled)
        self.assertEqual(a.host, "127.0.0.1")
        self.assertEqual(a.port, 8080)
        self.assertEqual(a.api_key, "")
        self.assertEqual(a.rate_limit_rpm, 120)

    def test_storage_defaults(self):
        s = StorageConfig()
        self.assertFalse(s.enabled)
        self.assertEqual(s.secret_key, "")

    def test_logging_defaults(self):
        log_cfg = LoggingConfig()
        self.assertEqual(log_cfg.level, "INFO")
        self.assertEqual(log_cfg.format, "human")
        self.assertIsNone(log_cfg.file)

    def test_top_level(self):
        cfg = EscrowPayConfig()
        self.assertIsInstance(cfg.escrow, EscrowConfig)
        self.assertIsInstance(cfg.signing, SigningConfig)
        self.assertIsInstance(cfg.storage, StorageConfig)


class TestSigningWindow(unittest.TestCase):

    def test_derived_from_expiry(self):
        self.assertEqual(SigningConfig(expire_minutes=3).window_seconds, 180)

    def test_explicit_override(self):
        self.assertEqual(SigningConfig(signing_window_seconds=45).window_seconds, 45)


# ═══════════════════════════════════════════════════════════════════
#  _merge helper
# ═══════════════════════════════════════════════════════════════════

class TestMerge(unittest.TestCase):

    def test_merge_updates_fields(self):
        s = SigningConfig()
        _merge(s, {"expire_minutes": 5, "api_key": "k"})
        self.assertEqual(s.expire_minutes, 5)
        self.assertEqual(s.api_key, "k")

    def test_merge_ignores_unknown_keys(self):
        s = SigningConfig()
        _merge(s, {"unknown_field": 42})
        self.assertFalse(hasattr(s, "unknown_field"))

    def test_merge_hyphenated_keys(self):
        e = EscrowConfig()
        _merge(e, {"max-amount": "50"})
        self.assertEqual(e.max_amount, "50")


# ═══════════════════════════════════════════════════════════════════
#  TOML loading
# ═══════════════════════════════════════════════════════════════════

@patch.dict(os.environ, _clean_env(), clear=True)
class TestLoadConfig(unittest.TestCase):

    def test_load_no_file(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.port, 8080)

    def test_load_missing_file(self):
        cfg = load_config("/tmp/__nonexistent_escrowpay__.toml")
        self.assertEqual(cfg.escrow.environment, "development")

    def test_load_toml_file(self):
        path = _write_toml("""\
            [escrow]
            environment = "production"
            network = "mainnet"
            expiry-grace-seconds = 600

            [conditions]
            strategy = "preimage-sha256"

            [signing]
            api_key = "app-key"
            expire_minutes = 15

            [api]
            port = 3000
            rate_limit_rpm = 0

            [storage]
            enabled = true
            path = "/var/lib/escrowpay/escrow.db"
        """)
        try:
            cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertTrue(cfg.escrow.is_production)
        self.assertEqual(cfg.escrow.network, "mainnet")
        self.assertEqual(cfg.escrow.expiry_grace_seconds, 600)
        self.assertEqual(cfg.signing.api_key, "app-key")
        self.assertEqual(cfg.signing.window_seconds, 900)
        self.assertEqual(cfg.api.port, 3000)
        self.assertEqual(cfg.api.rate_limit_rpm, 0)
        self.assertTrue(cfg.storage.enabled)
        self.assertEqual(cfg.storage.path, "/var/lib/escrowpay/escrow.db")


# ═══════════════════════════════════════════════════════════════════
#  Environment variable overrides
# ═══════════════════════════════════════════════════════════════════

class TestEnvOverrides(unittest.TestCase):

    def _load(self, **env):
        with patch.dict(os.environ, {**_clean_env(), **env}, clear=True):
            return load_config(None)

    def test_environment(self):
        self.assertTrue(self._load(ESCROWPAY_ENV="production").escrow.is_production)

    def test_xaman_credentials(self):
        cfg = self._load(XUMM_APIKEY="k", XUMM_APISECRET="s")
        self.assertEqual((cfg.signing.api_key, cfg.signing.api_secret), ("k", "s"))

    def test_conditions_strategy(self):
        self.assertEqual(self._load(ESCROWPAY_CONDITIONS="mock").conditions.strategy, "mock")

    def test_api_port(self):
        self.assertEqual(self._load(ESCROWPAY_API_PORT="4444").api.port, 4444)

    def test_db_path_enables_storage(self):
        cfg = self._load(ESCROWPAY_DB_PATH="/tmp/ep.db")
        self.assertEqual(cfg.storage.path, "/tmp/ep.db")
        self.assertTrue(cfg.storage.enabled)

    def test_log_level_uppercased(self):
        self.assertEqual(self._load(ESCROWPAY_LOG_LEVEL="debug").logging.level, "DEBUG")

    def test_rpc_url(self):
        self.assertEqual(
            self._load(ESCROWPAY_RPC_URL="http://localhost:5005").ledger.rpc_url,
            "http://localhost:5005",
        )

    def test_env_wins_over_toml(self):
        path = _write_toml("""\
            [escrow]
            max_amount = "10"
        """)
        try:
            with patch.dict(os.environ, {**_clean_env(), "ESCROWPAY_MAX_AMOUNT": "20"}, clear=True):
                cfg = load_config(path)
        finally:
            os.unlink(path)
        self.assertEqual(cfg.escrow.max_amount, "20")


if __name__ == "__main__":
    unittest.main()
