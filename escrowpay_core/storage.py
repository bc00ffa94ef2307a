"""
SQLite-based persistence for escrow contracts.

Stores every contract with its status so the service can recover after a
restart.  Fulfillments and preimages are sealed with AES-256-GCM under the
configured storage key before they touch disk; the public part of the
record is kept as JSON for inspection.

Usage:
    repo = ContractRepository("data/escrowpay.db", secret_key=key_bytes)
    repo.save_contract(contract)
    contracts = repo.load_contracts()
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Any

from Crypto.Cipher import AES

from escrowpay_core.contract import EscrowContract
from escrowpay_core.errors import ConfigError

logger = logging.getLogger("escrowpay_storage")


def parse_secret_key(hex_key: str) -> bytes:
    """Decode the configured hex key; it must be exactly 32 bytes."""
    try:
        key = bytes.fromhex(hex_key)
    except ValueError:
        raise ConfigError("storage.secret_key must be hex") from None
    if len(key) != 32:
        raise ConfigError("storage.secret_key must encode 32 bytes (AES-256)")
    return key


class ContractRepository:
    """Thin SQLite wrapper for persisting escrow contracts."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str, secret_key: bytes):
        if len(secret_key) != 32:
            raise ConfigError("Contract storage needs a 32-byte secret key")
        self.db_path = db_path
        self._key = secret_key
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Contract storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS escrow_contracts (
                id            TEXT PRIMARY KEY,
                booking_id    TEXT,
                from_address  TEXT NOT NULL,
                to_address    TEXT NOT NULL,
                amount        TEXT NOT NULL,
                state         TEXT NOT NULL,
                sequence      INTEGER,
                created_at    REAL NOT NULL,
                updated_at    REAL NOT NULL,
                record_json   TEXT NOT NULL,
                secret_nonce  BLOB NOT NULL,
                secret_tag    BLOB NOT NULL,
                secret_blob   BLOB NOT NULL
            )
        """)
        c.execute(
            "CREATE INDEX IF NOT EXISTS idx_contracts_booking ON escrow_contracts (booking_id)"
        )
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION})."
            )

    # ── sealing ──────────────────────────────────────────────────

    def _seal(self, data: bytes) -> tuple[bytes, bytes, bytes]:
        nonce = os.urandom(12)
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return nonce, tag, ciphertext

    def _open(self, nonce: bytes, tag: bytes, ciphertext: bytes) -> bytes:
        """Raises ValueError if the blob was tampered with or the key is wrong."""
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag)

    # ── contracts ────────────────────────────────────────────────

    def save_contract(self, contract: EscrowContract) -> None:
        record = contract.to_dict(include_secrets=False)
        secrets_json = json.dumps(
            {"fulfillment": contract.fulfillment, "preimage": contract.preimage}
        ).encode("utf-8")
        nonce, tag, blob = self._seal(secrets_json)
        self._conn.execute(
            """INSERT OR REPLACE INTO escrow_contracts
               (id, booking_id, from_address, to_address, amount, state,
                sequence, created_at, updated_at, record_json,
                secret_nonce, secret_tag, secret_blob)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (contract.id, contract.booking_id, contract.from_address,
             contract.to_address, contract.amount, contract.state,
             contract.sequence, contract.created_at, time.time(),
             json.dumps(record), nonce, tag, blob),
        )
        self._conn.commit()

    def _row_to_contract(self, row: sqlite3.Row) -> EscrowContract:
        record: dict[str, Any] = json.loads(row["record_json"])
        secrets = json.loads(
            self._open(row["secret_nonce"], row["secret_tag"], row["secret_blob"])
        )
        record.update(secrets)
        return EscrowContract.from_dict(record)

    def get_contract(self, contract_id: str) -> EscrowContract | None:
        row = self._conn.execute(
            "SELECT * FROM escrow_contracts WHERE id = ?", (contract_id,)
        ).fetchone()
        return self._row_to_contract(row) if row else None

    def load_contracts(self) -> list[EscrowContract]:
        rows = self._conn.execute(
            "SELECT * FROM escrow_contracts ORDER BY created_at"
        ).fetchall()
        return [self._row_to_contract(r) for r in rows]

    def count_by_state(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT state, COUNT(*) AS n FROM escrow_contracts GROUP BY state"
        ).fetchall()
        return {r["state"]: r["n"] for r in rows}

    def delete_contract(self, contract_id: str) -> None:
        self._conn.execute("DELETE FROM escrow_contracts WHERE id = ?", (contract_id,))
        self._conn.commit()

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
