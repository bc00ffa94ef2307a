"""
Shared pytest fixtures for the EscrowPay test suite.

``FakeLedger`` and ``FakeSigningService`` stand in for rippled and the Xaman
API.  The fake ledger applies escrow transactions with the same checks the
real one makes (existing escrow, fulfillment matches condition), so finish
and cancel flows end on a realistic engine result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json

import pytest
from xrpl.wallet import Wallet

from escrowpay_core.conditions import ConditionEngine, PreimageSha256Provider, verify_fulfillment
from escrowpay_core.config import EscrowConfig, SigningConfig
from escrowpay_core.errors import SigningServiceUnavailable
from escrowpay_core.ledger_client import TES_SUCCESS, LedgerEscrow, LedgerTxResult
from escrowpay_core.orchestrator import EscrowOrchestrator, EscrowService
from escrowpay_core.signing import CancelResult, SigningRequestRef, SigningStatus
from escrowpay_core.store import ContractStore
from escrowpay_core.xrpl_utils import from_ripple_time

T0 = 1_767_225_600  # 2026-01-01T00:00:00Z


def new_address() -> str:
    return Wallet.create().address


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """In-memory escrow ledger implementing the ``LedgerClient`` port."""

    def __init__(self, start_sequence: int = 7):
        self.start_sequence = start_sequence
        self.sequences: dict[str, int] = {}
        self.escrows: dict[tuple[str, int], dict] = {}
        self.txs: dict[str, LedgerTxResult] = {}
        self.unavailable = False
        self._n = 0

    async def account_sequence(self, address: str) -> int:
        if self.unavailable:
            raise SigningServiceUnavailable("ledger down")
        return self.sequences.get(address, self.start_sequence)

    async def transaction(self, tx_hash: str) -> LedgerTxResult:
        if self.unavailable:
            raise SigningServiceUnavailable("ledger down")
        return self.txs.get(tx_hash, LedgerTxResult(tx_hash=tx_hash))

    async def escrow_entry(self, owner: str, sequence: int) -> LedgerEscrow | None:
        if self.unavailable:
            raise SigningServiceUnavailable("ledger down")
        tx = self.escrows.get((owner, sequence))
        if tx is None:
            return None
        return LedgerEscrow(
            owner=owner,
            sequence=sequence,
            destination=tx["Destination"],
            amount_drops=tx["Amount"],
            condition=tx.get("Condition"),
            finish_after=from_ripple_time(tx["FinishAfter"]) if "FinishAfter" in tx else None,
            cancel_after=from_ripple_time(tx["CancelAfter"]) if "CancelAfter" in tx else None,
        )

    def _engine_result(self, tx: dict) -> str:
        kind = tx["TransactionType"]
        if kind == "EscrowCreate":
            self.escrows[(tx["Account"], tx["Sequence"])] = tx
            self.sequences[tx["Account"]] = tx["Sequence"] + 1
            return TES_SUCCESS
        key = (tx["Owner"], tx["OfferSequence"])
        escrow = self.escrows.get(key)
        if escrow is None:
            return "tecNO_TARGET"
        if kind == "EscrowFinish" and not verify_fulfillment(escrow["Condition"], tx["Fulfillment"]):
            return "tecCRYPTOCONDITION_ERROR"
        del self.escrows[key]
        return TES_SUCCESS

    def submit(self, tx: dict, validated: bool = True) -> str:
        self._n += 1
        tx_hash = hashlib.sha256(f"{self._n}:{json.dumps(tx, sort_keys=True)}".encode()).hexdigest().upper()
        result = self._engine_result(tx)
        self.txs[tx_hash] = LedgerTxResult(
            tx_hash=tx_hash,
            found=True,
            validated=validated,
            result=result,
            sequence=tx.get("Sequence"),
            transaction_type=tx["TransactionType"],
            fulfillment=tx.get("Fulfillment"),
        )
        return tx_hash

    def validate(self, tx_hash: str) -> None:
        self.txs[tx_hash] = dataclasses.replace(self.txs[tx_hash], validated=True)


class FakeSigningService:
    """In-memory stand-in for the Xaman payload API."""

    def __init__(self, ledger: FakeLedger):
        self.ledger = ledger
        self.payloads: dict[str, dict] = {}
        self.options: dict[str, object] = {}
        self.statuses: dict[str, SigningStatus] = {}
        self.unavailable = False
        self.delay = 0.0
        self._n = 0

    @property
    def last_request_id(self) -> str:
        return f"req-{self._n}"

    async def create_signing_request(self, txjson, options):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise SigningServiceUnavailable("provider down")
        self._n += 1
        rid = f"req-{self._n}"
        self.payloads[rid] = dict(txjson)
        self.options[rid] = options
        self.statuses[rid] = SigningStatus(request_id=rid)
        return SigningRequestRef(request_id=rid, next_url=f"https://xumm.app/sign/{rid}")

    async def get_signing_request_status(self, request_id):
        if self.unavailable:
            raise SigningServiceUnavailable("provider down")
        return self.statuses[request_id]

    async def cancel_signing_request(self, request_id):
        status = self.statuses[request_id]
        if status.answered:
            return CancelResult(cancelled=False, reason="ALREADY_RESOLVED")
        self.statuses[request_id] = SigningStatus(request_id=request_id, rejected=True, resolved=True)
        return CancelResult(cancelled=True, reason="OK")

    # ── what the wallet holder does ──────────────────────────────

    def sign(self, request_id: str, validated: bool = True, txjson: dict | None = None) -> str:
        tx = txjson or self.payloads[request_id]
        tx_hash = self.ledger.submit(tx, validated=validated)
        self.statuses[request_id] = SigningStatus(
            request_id=request_id, signed=True, resolved=True,
            tx_hash=tx_hash, account=tx["Account"], dispatched_result="tesSUCCESS",
        )
        return tx_hash

    def dispatch_fail(self, request_id: str, result: str = "tefPAST_SEQ") -> str:
        """Signed in the wallet, but the provider's submission was refused before any ledger saw it."""
        tx = self.payloads[request_id]
        tx_hash = hashlib.sha256(f"unapplied:{request_id}".encode()).hexdigest().upper()
        self.statuses[request_id] = SigningStatus(
            request_id=request_id, signed=True, resolved=True,
            tx_hash=tx_hash, account=tx["Account"], dispatched_result=result,
        )
        return tx_hash

    def reject(self, request_id: str) -> None:
        self.statuses[request_id] = SigningStatus(request_id=request_id, rejected=True, resolved=True)

    def expire(self, request_id: str) -> None:
        self.statuses[request_id] = SigningStatus(request_id=request_id, expired=True)


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture
def payer():
    return new_address()


@pytest.fixture
def payee():
    return new_address()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def fake_signing(fake_ledger):
    return FakeSigningService(fake_ledger)


@pytest.fixture
def engine():
    return ConditionEngine(PreimageSha256Provider())


@pytest.fixture
def contract_store():
    return ContractStore()


@pytest.fixture
def orchestrator(contract_store, engine, fake_signing, fake_ledger, clock):
    return EscrowOrchestrator(
        contract_store, engine, fake_signing, fake_ledger,
        escrow_cfg=EscrowConfig(expiry_grace_seconds=3600),
        signing_cfg=SigningConfig(expire_minutes=10, request_timeout=0.5),
        clock=clock,
    )


@pytest.fixture
def service(orchestrator):
    return EscrowService(orchestrator)
