"""
XRPL helpers shared by the transaction builders and the ledger client.

Thin layer over xrpl-py that adds the input rules EscrowPay applies on
top of the library:

  - addresses must be classic ``r...`` addresses (no X-addresses)
  - XRP amounts are decimal strings or ints, never floats, with at most
    six decimal places
  - timestamps are Unix seconds everywhere outside the transaction JSON
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.utils import (
    XRPLTimeRangeException,
    XRPRangeException,
    posix_to_ripple_time,
    ripple_time_to_posix,
)
from xrpl.utils import drops_to_xrp as _drops_to_xrp
from xrpl.utils import xrp_to_drops as _xrp_to_drops

XRP_DECIMALS = 6


def is_valid_address(address: Any) -> bool:
    return isinstance(address, str) and is_valid_classic_address(address)


# ── amounts ──────────────────────────────────────────────────────

def parse_xrp(amount: str | int | Decimal) -> Decimal:
    """Parse a decimal XRP amount.  Floats are rejected to avoid binary dust."""
    if isinstance(amount, (float, bool)):
        raise ValueError("XRP amounts must be decimal strings, not floats")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {amount!r}") from None
    if not value.is_finite():
        raise ValueError("Amount must be finite")
    return value


def xrp_to_drops(amount: str | int | Decimal) -> str:
    """
    Convert an XRP amount to an integer drop string.

    >>> xrp_to_drops("25")
    '25000000'
    >>> xrp_to_drops("0.000001")
    '1'
    """
    value = parse_xrp(amount)
    exponent = value.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -XRP_DECIMALS:
        raise ValueError(f"More than {XRP_DECIMALS} decimal places: {amount}")
    try:
        return _xrp_to_drops(value)
    except XRPRangeException as exc:
        raise ValueError(str(exc)) from exc


def drops_to_xrp(drops: str | int) -> str:
    return format(_drops_to_xrp(str(drops)).normalize(), "f")


# ── time ─────────────────────────────────────────────────────────

def to_ripple_time(unix_ts: int) -> int:
    """Unix seconds to Ripple-epoch seconds.  Raises ValueError outside the ledger's range."""
    try:
        return posix_to_ripple_time(unix_ts)
    except XRPLTimeRangeException as exc:
        raise ValueError(str(exc)) from exc


def from_ripple_time(ripple_ts: int) -> int:
    return ripple_time_to_posix(int(ripple_ts))
