"""
Test suite for escrowpay_core.xrpl_utils.

Covers:
  - Classic address validation (checksum, alphabet, non-string input)
  - Ripple-epoch time helpers
  - XRP <-> drops conversion with EscrowPay's decimal input rules
"""

import unittest
from decimal import Decimal

from xrpl.wallet import Wallet

from escrowpay_core.xrpl_utils import (
    drops_to_xrp,
    from_ripple_time,
    is_valid_address,
    parse_xrp,
    to_ripple_time,
    xrp_to_drops,
)

GENESIS_ADDRESS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
RIPPLE_EPOCH_OFFSET = 946_684_800


class TestAddresses(unittest.TestCase):

    def test_genesis_address_valid(self):
        self.assertTrue(is_valid_address(GENESIS_ADDRESS))

    def test_generated_addresses_valid_and_distinct(self):
        a, b = Wallet.create().address, Wallet.create().address
        self.assertTrue(is_valid_address(a))
        self.assertTrue(is_valid_address(b))
        self.assertNotEqual(a, b)

    def test_invalid_addresses(self):
        for bad in ("not-an-address", "", "rShort", "x" + GENESIS_ADDRESS[1:], None, 12345):
            self.assertFalse(is_valid_address(bad), bad)

    def test_checksum_typo_rejected(self):
        last = GENESIS_ADDRESS[-1]
        typo = GENESIS_ADDRESS[:-1] + ("a" if last != "a" else "b")
        self.assertFalse(is_valid_address(typo))


class TestRippleTime(unittest.TestCase):

    def test_epoch_offset(self):
        self.assertEqual(to_ripple_time(RIPPLE_EPOCH_OFFSET), 0)
        self.assertEqual(from_ripple_time(0), RIPPLE_EPOCH_OFFSET)

    def test_roundtrip(self):
        self.assertEqual(from_ripple_time(to_ripple_time(1_767_225_600)), 1_767_225_600)

    def test_before_epoch_rejected(self):
        with self.assertRaises(ValueError):
            to_ripple_time(RIPPLE_EPOCH_OFFSET - 1)


class TestAmounts(unittest.TestCase):

    def test_xrp_to_drops(self):
        self.assertEqual(xrp_to_drops("25"), "25000000")
        self.assertEqual(xrp_to_drops("0.000001"), "1")
        self.assertEqual(xrp_to_drops(3), "3000000")
        self.assertEqual(xrp_to_drops("1.500000"), "1500000")

    def test_too_many_decimals(self):
        with self.assertRaises(ValueError):
            xrp_to_drops("1.0000001")

    def test_above_supply_rejected(self):
        with self.assertRaises(ValueError):
            xrp_to_drops("100000000001")

    def test_floats_rejected(self):
        with self.assertRaises(ValueError):
            parse_xrp(0.1)

    def test_bool_rejected(self):
        with self.assertRaises(ValueError):
            parse_xrp(True)

    def test_garbage_rejected(self):
        for bad in ("abc", "NaN", "Infinity", ""):
            with self.assertRaises(ValueError):
                parse_xrp(bad)

    def test_parse_exact(self):
        self.assertEqual(parse_xrp(" 12.5 "), Decimal("12.5"))

    def test_drops_to_xrp(self):
        self.assertEqual(drops_to_xrp("25000000"), "25")
        self.assertEqual(drops_to_xrp(1), "0.000001")
        self.assertEqual(drops_to_xrp("1500000"), "1.5")
        self.assertEqual(drops_to_xrp("100000000000"), "100000")


if __name__ == "__main__":
    unittest.main()
