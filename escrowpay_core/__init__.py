"""
EscrowPay - conditional XRP payments for a booking platform.

Key features:
- PREIMAGE-SHA-256 crypto-conditions for ledger-native escrows
- EscrowCreate / EscrowFinish / EscrowCancel builders with exhaustive validation
- Explicit contract state machine (created, pending, finished, cancelled, expired)
- Delegated signing through the Xaman platform API (no local signing keys)
- SQLite persistence with fulfillments encrypted at rest
"""

__version__ = "1.0.0"
__all__ = [
    "xrpl_utils",
    "conditions",
    "transaction",
    "contract",
    "store",
    "storage",
    "signing",
    "ledger_client",
    "orchestrator",
    "errors",
    "config",
    "logging_config",
    "api",
]
