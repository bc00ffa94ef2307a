#!/usr/bin/env python3
"""
EscrowPay server runner: starts the escrow service with
  - contract store (restored from SQLite when storage is enabled)
  - Xaman signing client and rippled ledger client
  - REST API
  - periodic local expiry of escrows whose finish window has elapsed

Usage:
    python run_server.py --config escrowpay.toml --port 8080

Environment variables (alternative to flags):
    ESCROWPAY_ENV, ESCROWPAY_API_PORT, XUMM_APIKEY, XUMM_APISECRET,
    ESCROWPAY_DB_PATH, ESCROWPAY_SECRET_KEY
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from escrowpay_core.api import APIServer  # noqa: E402
from escrowpay_core.config import EscrowPayConfig, load_config  # noqa: E402
from escrowpay_core.logging_config import setup_logging  # noqa: E402
from escrowpay_core.orchestrator import EscrowService  # noqa: E402
from escrowpay_core.storage import ContractRepository, parse_secret_key  # noqa: E402
from escrowpay_core.store import init_store  # noqa: E402

logger = logging.getLogger("escrowpay_server")

# Expiry sweep interval (seconds)
EXPIRY_INTERVAL = 60


class EscrowPayServer:
    """Wires configuration, storage, service and API into one process."""

    def __init__(self, config: EscrowPayConfig):
        self.config = config
        self.repository: ContractRepository | None = None
        self.service: EscrowService | None = None
        self._api: APIServer | None = None
        self._bg_tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        cfg = self.config
        if cfg.storage.enabled:
            self.repository = ContractRepository(
                cfg.storage.path, parse_secret_key(cfg.storage.secret_key)
            )
        elif cfg.escrow.is_production:
            logger.warning("Storage disabled in production: contracts are lost on restart")

        store = init_store(self.repository)
        self.service = EscrowService.from_config(cfg, store)

        self._bg_tasks.append(asyncio.create_task(self._expiry_loop()))

        if cfg.api.enabled:
            self._api = APIServer(
                self.service, host=cfg.api.host, port=cfg.api.port, api_config=cfg.api,
            )
            await self._api.start()

        logger.info(
            f"EscrowPay started | env={cfg.escrow.environment} | "
            f"network={cfg.escrow.network} | contracts={len(store)}"
        )

    async def stop(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        for task in self._bg_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._api is not None:
            await self._api.stop()
        if self.service is not None:
            await self.service.close()
        if self.repository is not None:
            self.repository.close()
        logger.info("EscrowPay stopped")

    async def _expiry_loop(self) -> None:
        if self.service is None:
            raise RuntimeError("Expiry loop started before the escrow service")
        service = self.service
        while True:
            await asyncio.sleep(EXPIRY_INTERVAL)
            try:
                expired = await service.orchestrator.expire_overdue()
            except Exception:
                logger.exception("Expiry sweep failed")
                continue
            if expired:
                logger.info(f"Expired {len(expired)} escrow(s) past their finish window")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args():
    p = argparse.ArgumentParser(description="EscrowPay escrow service")
    p.add_argument("--config", default=os.environ.get("ESCROWPAY_CONFIG"),
                   help="Path to escrowpay.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--env", default=None, choices=["development", "staging", "production"],
                   help="Override escrow.environment")
    return p.parse_args()


async def main():
    args = parse_args()

    # Load config (TOML + env overrides), then CLI flags
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    if args.env:
        cfg.escrow.environment = args.env

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    server = EscrowPayServer(cfg)
    await server.start()
    try:
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await server.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
