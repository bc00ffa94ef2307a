"""
Read-only XRPL access over rippled JSON-RPC (xrpl-py).

Used for the facts the signing provider does not give us reliably:

  - the payer's next account sequence, pinned into EscrowCreate so the
    escrow's OfferSequence is known before the user signs
  - whether a signed transaction is validated, and with which result
  - whether the escrow a contract refers to still exists on the ledger
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.constants import XRPLException
from xrpl.models.requests import AccountInfo, LedgerEntry, Tx
from xrpl.models.requests.ledger_entry import Escrow as EscrowLocator
from xrpl.models.requests.request import Request
from xrpl.models.response import Response

from escrowpay_core.errors import InvalidEscrowParams, SigningServiceUnavailable, SigningTimeout
from escrowpay_core.xrpl_utils import from_ripple_time

logger = logging.getLogger("escrowpay_ledger")

TES_SUCCESS = "tesSUCCESS"


@dataclass(frozen=True)
class LedgerTxResult:
    tx_hash: str
    found: bool = False
    validated: bool = False
    result: Optional[str] = None       # e.g. tesSUCCESS, tecCRYPTOCONDITION_ERROR
    sequence: Optional[int] = None
    transaction_type: Optional[str] = None
    fulfillment: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.validated and self.result == TES_SUCCESS


@dataclass(frozen=True)
class LedgerEscrow:
    """An Escrow ledger object, with times in Unix seconds."""
    owner: str
    sequence: int
    destination: str
    amount_drops: str
    condition: Optional[str] = None
    finish_after: Optional[int] = None
    cancel_after: Optional[int] = None
    previous_txn_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "sequence": self.sequence,
            "destination": self.destination,
            "amount_drops": self.amount_drops,
            "condition": self.condition,
            "finish_after": self.finish_after,
            "cancel_after": self.cancel_after,
            "previous_txn_id": self.previous_txn_id,
        }


class LedgerClient(Protocol):
    async def account_sequence(self, address: str) -> int: ...

    async def transaction(self, tx_hash: str) -> LedgerTxResult: ...

    async def escrow_entry(self, owner: str, sequence: int) -> Optional[LedgerEscrow]: ...


def parse_tx_result(tx_hash: str, result: dict) -> LedgerTxResult:
    """Normalise a ``tx`` reply (API v1 and v2 layouts)."""
    if result.get("status") == "error" or result.get("error"):
        return LedgerTxResult(tx_hash=tx_hash, found=False)
    tx_json = result.get("tx_json") or result
    meta = result.get("meta") or {}
    return LedgerTxResult(
        tx_hash=tx_hash,
        found=True,
        validated=bool(result.get("validated")),
        result=meta.get("TransactionResult") if isinstance(meta, dict) else None,
        sequence=tx_json.get("Sequence"),
        transaction_type=tx_json.get("TransactionType"),
        fulfillment=tx_json.get("Fulfillment"),
    )


def parse_escrow_node(owner: str, sequence: int, node: dict) -> LedgerEscrow:
    """Map an ``Escrow`` ledger object onto ``LedgerEscrow``."""
    return LedgerEscrow(
        owner=node.get("Account", owner),
        sequence=sequence,
        destination=node.get("Destination", ""),
        amount_drops=str(node.get("Amount", "")),
        condition=node.get("Condition"),
        finish_after=from_ripple_time(node["FinishAfter"]) if "FinishAfter" in node else None,
        cancel_after=from_ripple_time(node["CancelAfter"]) if "CancelAfter" in node else None,
        previous_txn_id=node.get("PreviousTxnID"),
    )


class RippledClient:
    """``LedgerClient`` over xrpl-py's async JSON-RPC client."""

    def __init__(self, rpc_url: str, timeout: float = 15.0, client: AsyncJsonRpcClient | None = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client = client or AsyncJsonRpcClient(rpc_url)

    async def _request(self, request: Request) -> Response:
        method = request.method.value
        try:
            return await asyncio.wait_for(self._client.request(request), self.timeout)
        except asyncio.TimeoutError as exc:
            raise SigningTimeout(f"Ledger endpoint did not answer within {self.timeout}s") from exc
        except (httpx.HTTPError, XRPLException) as exc:
            logger.error(f"rippled {method} failed: {exc}")
            raise SigningServiceUnavailable(f"Ledger endpoint unreachable: {exc}") from exc

    async def account_sequence(self, address: str) -> int:
        response = await self._request(AccountInfo(account=address, ledger_index="current"))
        result = response.result
        if not response.is_successful():
            if result.get("error") == "actNotFound":
                raise InvalidEscrowParams({"from_address": "Account is not funded on the ledger"})
            raise SigningServiceUnavailable(f"account_info failed: {result.get('error', 'malformed reply')}")
        return int(result["account_data"]["Sequence"])

    async def transaction(self, tx_hash: str) -> LedgerTxResult:
        response = await self._request(Tx(transaction=tx_hash))
        if not response.is_successful():
            return LedgerTxResult(tx_hash=tx_hash, found=False)
        return parse_tx_result(tx_hash, response.result)

    async def escrow_entry(self, owner: str, sequence: int) -> Optional[LedgerEscrow]:
        """The escrow created by *owner*'s transaction *sequence*, or None once it is gone."""
        response = await self._request(LedgerEntry(
            escrow=EscrowLocator(owner=owner, seq=sequence), ledger_index="validated",
        ))
        result = response.result
        if not response.is_successful():
            if result.get("error") == "entryNotFound":
                return None
            raise SigningServiceUnavailable(f"ledger_entry failed: {result.get('error', 'malformed reply')}")
        return parse_escrow_node(owner, sequence, result.get("node") or {})
