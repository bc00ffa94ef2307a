"""
Tests for escrowpay_core.ledger_client — rippled JSON-RPC lookups.

Covers:
  - ``tx`` reply normalisation (API v1 and v2 layouts)
  - Escrow ledger object parsing
  - RippledClient against a local aiohttp JSON-RPC endpoint
"""

from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from xrpl.wallet import Wallet

from escrowpay_core.errors import InvalidEscrowParams, SigningServiceUnavailable
from escrowpay_core.ledger_client import (
    TES_SUCCESS,
    RippledClient,
    parse_escrow_node,
    parse_tx_result,
)

PAYER = Wallet.create().address
PAYEE = Wallet.create().address
UNFUNDED = Wallet.create().address
CONDITION = "A0258020" + "AB" * 32 + "810120"
RIPPLE_EPOCH_OFFSET = 946_684_800


class TestParseTxResult:
    def test_api_v1_layout(self):
        r = parse_tx_result("H", {
            "TransactionType": "EscrowCreate", "Sequence": 7,
            "meta": {"TransactionResult": "tesSUCCESS"}, "validated": True,
        })
        assert r.found and r.validated and r.succeeded
        assert (r.sequence, r.transaction_type) == (7, "EscrowCreate")

    def test_api_v2_layout(self):
        r = parse_tx_result("H", {
            "tx_json": {"TransactionType": "EscrowFinish", "Sequence": 12, "Fulfillment": "A0228020AA"},
            "meta": {"TransactionResult": "tecCRYPTOCONDITION_ERROR"}, "validated": True,
        })
        assert r.found and r.validated
        assert not r.succeeded
        assert r.result == "tecCRYPTOCONDITION_ERROR"
        assert r.fulfillment == "A0228020AA"

    def test_unvalidated_not_succeeded(self):
        r = parse_tx_result("H", {"meta": {"TransactionResult": TES_SUCCESS}, "validated": False})
        assert not r.succeeded

    def test_not_found(self):
        r = parse_tx_result("H", {"error": "txnNotFound", "status": "error"})
        assert not r.found
        assert r.tx_hash == "H"

    def test_binary_meta_ignored(self):
        r = parse_tx_result("H", {"meta": "201C00", "validated": True})
        assert r.result is None


class TestParseEscrowNode:
    def test_times_converted_to_unix(self):
        e = parse_escrow_node(PAYER, 7, {
            "LedgerEntryType": "Escrow", "Account": PAYER, "Destination": PAYEE,
            "Amount": "25000000", "Condition": CONDITION,
            "FinishAfter": 60, "CancelAfter": 3600, "PreviousTxnID": "CREATEHASH",
        })
        assert (e.owner, e.sequence, e.destination) == (PAYER, 7, PAYEE)
        assert e.amount_drops == "25000000"
        assert e.finish_after == RIPPLE_EPOCH_OFFSET + 60
        assert e.cancel_after == RIPPLE_EPOCH_OFFSET + 3600
        assert e.to_dict()["previous_txn_id"] == "CREATEHASH"

    def test_optional_times(self):
        e = parse_escrow_node(PAYER, 7, {"Account": PAYER, "Destination": PAYEE, "Amount": "1"})
        assert e.finish_after is None
        assert e.cancel_after is None
        assert e.condition is None


# ═══════════════════════════════════════════════════════════════════
#  RippledClient
# ═══════════════════════════════════════════════════════════════════

def _reply(body: dict, result: dict) -> web.Response:
    return web.json_response({"result": result, "id": body.get("id")})


def _rippled_app(calls: list, http_status: int = 200) -> web.Application:
    async def rpc(request: web.Request) -> web.Response:
        body = await request.json()
        calls.append(body)
        if http_status != 200:
            return web.Response(status=http_status)
        method = body["method"]
        params = body["params"][0]
        if method == "account_info":
            if params["account"] == UNFUNDED:
                return _reply(body, {"error": "actNotFound", "status": "error"})
            return _reply(body, {"account_data": {"Account": params["account"], "Sequence": 42},
                                 "status": "success"})
        if method == "tx":
            if params["transaction"] == "MISSING":
                return _reply(body, {"error": "txnNotFound", "status": "error"})
            return _reply(body, {
                "hash": params["transaction"],
                "tx_json": {"TransactionType": "EscrowCreate", "Sequence": 42},
                "meta": {"TransactionResult": "tesSUCCESS"},
                "validated": True,
                "status": "success",
            })
        if method == "ledger_entry":
            locator = params["escrow"]
            if locator["seq"] != 42:
                return _reply(body, {"error": "entryNotFound", "status": "error"})
            return _reply(body, {
                "index": "ESCROWINDEX",
                "node": {
                    "LedgerEntryType": "Escrow", "Account": locator["owner"], "Destination": PAYEE,
                    "Amount": "25000000", "Condition": CONDITION, "CancelAfter": 3600,
                },
                "validated": True,
                "status": "success",
            })
        return _reply(body, {"error": "unknownCmd", "status": "error"})

    app = web.Application()
    app.router.add_post("/", rpc)
    return app


class TestRippledClient:
    @pytest.mark.asyncio
    async def test_account_sequence(self):
        calls: list = []
        async with TestServer(_rippled_app(calls)) as server:
            client = RippledClient(str(server.make_url("/")))
            assert await client.account_sequence(PAYER) == 42
        assert calls[0]["method"] == "account_info"
        assert calls[0]["params"][0]["ledger_index"] == "current"

    @pytest.mark.asyncio
    async def test_unfunded_account(self):
        async with TestServer(_rippled_app([])) as server:
            client = RippledClient(str(server.make_url("/")))
            with pytest.raises(InvalidEscrowParams) as exc:
                await client.account_sequence(UNFUNDED)
        assert "from_address" in exc.value.fields

    @pytest.mark.asyncio
    async def test_transaction(self):
        async with TestServer(_rippled_app([])) as server:
            client = RippledClient(str(server.make_url("/")))
            r = await client.transaction("ABC")
        assert r.succeeded
        assert r.sequence == 42

    @pytest.mark.asyncio
    async def test_transaction_not_found(self):
        async with TestServer(_rippled_app([])) as server:
            client = RippledClient(str(server.make_url("/")))
            r = await client.transaction("MISSING")
        assert not r.found

    @pytest.mark.asyncio
    async def test_escrow_entry(self):
        calls: list = []
        async with TestServer(_rippled_app(calls)) as server:
            client = RippledClient(str(server.make_url("/")))
            entry = await client.escrow_entry(PAYER, 42)
            gone = await client.escrow_entry(PAYER, 43)
        assert calls[0]["method"] == "ledger_entry"
        assert calls[0]["params"][0]["escrow"] == {"owner": PAYER, "seq": 42}
        assert calls[0]["params"][0]["ledger_index"] == "validated"
        assert entry.owner == PAYER
        assert entry.condition == CONDITION
        assert entry.cancel_after == RIPPLE_EPOCH_OFFSET + 3600
        assert gone is None

    @pytest.mark.asyncio
    async def test_http_error(self):
        async with TestServer(_rippled_app([], http_status=502)) as server:
            client = RippledClient(str(server.make_url("/")))
            with pytest.raises(SigningServiceUnavailable):
                await client.account_sequence(PAYER)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        client = RippledClient("http://127.0.0.1:9", timeout=2.0)
        with pytest.raises(SigningServiceUnavailable):
            await client.account_sequence(PAYER)
