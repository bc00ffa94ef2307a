"""
Escrow transaction builders.

Validate parameters, then build the three XRPL escrow transactions as
xrpl-py models, ready to hand to a signing provider:

  - EscrowCreate  – lock XRP behind a crypto-condition and time window
  - EscrowFinish  – release it to the destination with the fulfillment
  - EscrowCancel  – return it to the owner after CancelAfter

Address validation always runs first and fails with ``InvalidAddress``;
every other violation is collected and reported together in
``InvalidEscrowParams.fields``.  The models are only built from values
that already passed these checks.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Iterable, Optional, Type

from xrpl.models.exceptions import XRPLModelException
from xrpl.models.transactions import EscrowCancel, EscrowCreate, EscrowFinish, Memo
from xrpl.models.transactions.transaction import Transaction

from escrowpay_core.conditions import (
    is_mock_encoding,
    parse_condition,
    parse_fulfillment,
)
from escrowpay_core.errors import InvalidAddress, InvalidEscrowParams, InvalidEscrowReference
from escrowpay_core.xrpl_utils import (
    XRP_DECIMALS,
    is_valid_address,
    parse_xrp,
    to_ripple_time,
    xrp_to_drops,
)

TT_ESCROW_CREATE = "EscrowCreate"
TT_ESCROW_FINISH = "EscrowFinish"
TT_ESCROW_CANCEL = "EscrowCancel"

MAX_UINT32 = 0xFFFFFFFF
DEFAULT_MAX_AMOUNT = "100000"


# ═══════════════════════════════════════════════════════════════════
#  Memos
# ═══════════════════════════════════════════════════════════════════

def _to_hex(text: str) -> str:
    return text.encode("utf-8").hex().upper()


def _from_hex(text: str) -> str:
    return bytes.fromhex(text).decode("utf-8")


def make_memo(data: str, memo_type: str | None = None, memo_format: str | None = None) -> Memo:
    """Build an XRPL ``Memo`` with hex-encoded fields."""
    return Memo(
        memo_data=_to_hex(data),
        memo_type=_to_hex(memo_type) if memo_type else None,
        memo_format=_to_hex(memo_format) if memo_format else None,
    )


def parse_memos(memos: Iterable[dict] | None) -> list[dict[str, str]]:
    """Decode the ``Memos`` array of a transaction JSON."""
    out = []
    for wrapper in memos or []:
        memo = wrapper.get("Memo") or {}
        item = {"data": _from_hex(memo["MemoData"]) if memo.get("MemoData") else ""}
        if memo.get("MemoType"):
            item["type"] = _from_hex(memo["MemoType"])
        if memo.get("MemoFormat"):
            item["format"] = _from_hex(memo["MemoFormat"])
        out.append(item)
    return out


# ═══════════════════════════════════════════════════════════════════
#  Transaction JSON
# ═══════════════════════════════════════════════════════════════════

def to_txjson(tx: Transaction) -> dict:
    """
    Transaction JSON for the signing provider.

    The empty ``SigningPubKey`` placeholder is dropped; the wallet that
    signs fills it in.
    """
    d = tx.to_xrpl()
    if not d.get("SigningPubKey"):
        d.pop("SigningPubKey", None)
    return d


def to_json(tx: Transaction) -> str:
    return json.dumps(to_txjson(tx), sort_keys=True)


_MODELS: dict[str, Type[Transaction]] = {
    TT_ESCROW_CREATE: EscrowCreate,
    TT_ESCROW_FINISH: EscrowFinish,
    TT_ESCROW_CANCEL: EscrowCancel,
}


def parse_transaction(data: str | dict) -> Transaction:
    """Re-parse a serialized escrow transaction (dict or JSON text)."""
    d = json.loads(data) if isinstance(data, str) else data
    model = _MODELS.get(d.get("TransactionType"))
    if model is None:
        raise ValueError(f"Not an escrow transaction: {d.get('TransactionType')!r}")
    return model.from_xrpl(d)


def _build(model: Type[Transaction], **fields: Any) -> Any:
    try:
        return model(**fields)
    except XRPLModelException as exc:
        raise InvalidEscrowParams({"transaction": str(exc)}) from exc


# ═══════════════════════════════════════════════════════════════════
#  Validation helpers
# ═══════════════════════════════════════════════════════════════════

def _require_address(address: str, name: str) -> None:
    if not is_valid_address(address):
        raise InvalidAddress(address, name)


def validate_amount(amount: Any, max_amount: str = DEFAULT_MAX_AMOUNT) -> str | None:
    """Return a reason string if *amount* is not a valid escrow amount."""
    try:
        value = parse_xrp(amount)
    except ValueError as exc:
        return str(exc)
    if value <= 0:
        return "Amount must be greater than 0"
    if value < Decimal(1).scaleb(-XRP_DECIMALS):
        return "Amount must be at least 0.000001 XRP"
    if value > Decimal(str(max_amount)):
        return f"Amount cannot exceed {max_amount} XRP"
    try:
        xrp_to_drops(value)
    except ValueError as exc:
        return str(exc)
    return None


def _check_condition(condition: str, allow_mock: bool) -> str | None:
    if is_mock_encoding(condition):
        return None if allow_mock else "Mock conditions cannot be submitted to the ledger"
    try:
        parse_condition(condition)
    except ValueError as exc:
        return str(exc)
    return None


def _check_fulfillment(fulfillment: str, allow_mock: bool) -> str | None:
    if is_mock_encoding(fulfillment):
        return None if allow_mock else "Mock fulfillments cannot be submitted to the ledger"
    try:
        parse_fulfillment(fulfillment)
    except ValueError as exc:
        return str(exc)
    return None


def _check_time(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return "Must be a Unix timestamp in whole seconds"
    try:
        to_ripple_time(value)
    except ValueError:
        return "Outside the ledger's time range"
    return None


def _check_sequence(sequence: Any) -> None:
    if isinstance(sequence, bool) or not isinstance(sequence, int) or not 0 < sequence <= MAX_UINT32:
        raise InvalidEscrowReference(f"OfferSequence must be a positive 32-bit integer, got {sequence!r}")


# ═══════════════════════════════════════════════════════════════════
#  Builders
# ═══════════════════════════════════════════════════════════════════

def build_escrow_create(
    from_address: str,
    to_address: str,
    amount: str,
    condition: str,
    finish_after: Optional[int] = None,
    cancel_after: Optional[int] = None,
    destination_tag: Optional[int] = None,
    *,
    max_amount: str = DEFAULT_MAX_AMOUNT,
    memos: Iterable[Memo] = (),
    sequence: Optional[int] = None,
    allow_mock: bool = False,
) -> EscrowCreate:
    """Validate parameters and build an EscrowCreate transaction."""
    _require_address(from_address, "from_address")
    _require_address(to_address, "to_address")

    errors: dict[str, str] = {}
    if from_address == to_address:
        errors["to_address"] = "Destination must differ from the source account"
    reason = validate_amount(amount, max_amount)
    if reason:
        errors["amount"] = reason
    reason = _check_condition(condition, allow_mock)
    if reason:
        errors["condition"] = reason
    if finish_after is not None:
        reason = _check_time(finish_after)
        if reason:
            errors["finishAfter"] = reason
    if cancel_after is not None:
        reason = _check_time(cancel_after)
        if reason:
            errors["cancelAfter"] = reason
    if (
        finish_after is not None and cancel_after is not None
        and "finishAfter" not in errors and "cancelAfter" not in errors
        and cancel_after <= finish_after
    ):
        errors["cancelAfter"] = "cancelAfter must be later than finishAfter"
    if destination_tag is not None and (
        isinstance(destination_tag, bool)
        or not isinstance(destination_tag, int)
        or not 0 <= destination_tag <= MAX_UINT32
    ):
        errors["destinationTag"] = "Destination tag must be an unsigned 32-bit integer"
    if sequence is not None and (
        isinstance(sequence, bool) or not isinstance(sequence, int) or not 0 < sequence <= MAX_UINT32
    ):
        errors["sequence"] = "Sequence must be a positive 32-bit integer"
    if errors:
        raise InvalidEscrowParams(errors)

    return _build(
        EscrowCreate,
        account=from_address,
        destination=to_address,
        amount=xrp_to_drops(amount),
        condition=condition.upper(),
        finish_after=to_ripple_time(finish_after) if finish_after is not None else None,
        cancel_after=to_ripple_time(cancel_after) if cancel_after is not None else None,
        destination_tag=destination_tag,
        sequence=sequence,
        memos=list(memos) or None,
    )


def build_escrow_finish(
    owner: str,
    sequence: int,
    condition: str,
    fulfillment: str,
    *,
    account: Optional[str] = None,
    allow_mock: bool = False,
) -> EscrowFinish:
    """
    Build an EscrowFinish transaction.

    The fulfillment is not checked against the condition here; the ledger
    does that when the transaction executes.  Malformed encodings are still
    rejected so a signing round-trip is not wasted on them.
    """
    _require_address(owner, "owner")
    if account is not None:
        _require_address(account, "account")
    _check_sequence(sequence)

    errors: dict[str, str] = {}
    reason = _check_condition(condition, allow_mock)
    if reason:
        errors["condition"] = reason
    reason = _check_fulfillment(fulfillment, allow_mock)
    if reason:
        errors["fulfillment"] = reason
    if errors:
        raise InvalidEscrowParams(errors)

    return _build(
        EscrowFinish,
        account=account or owner,
        owner=owner,
        offer_sequence=sequence,
        condition=condition.upper(),
        fulfillment=fulfillment.upper(),
    )


def build_escrow_cancel(owner: str, sequence: int, *, account: Optional[str] = None) -> EscrowCancel:
    """Build an EscrowCancel; the ledger enforces CancelAfter."""
    _require_address(owner, "owner")
    if account is not None:
        _require_address(account, "account")
    _check_sequence(sequence)
    return _build(EscrowCancel, account=account or owner, owner=owner, offer_sequence=sequence)
