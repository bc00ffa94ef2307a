"""
Error taxonomy for EscrowPay.

Every failure the escrow core reports is an ``EscrowError`` subclass with a
stable ``code`` (used by the service facade and the REST layer) and a
``retriable`` flag.  Only the two signing-service categories are retriable,
and only when the caller asks for it; nothing here retries in the background.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base class for all escrow-core errors."""

    code: str = "escrow_error"
    retriable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retriable": self.retriable}


class InvalidAddress(EscrowError):
    """A ledger address failed the classic-address check."""

    code = "invalid_address"

    def __init__(self, address: str, field: str = "address"):
        super().__init__(f"Invalid XRPL address for {field}: {address!r}")
        self.address = address
        self.field = field


class InvalidEscrowParams(EscrowError):
    """One or more escrow parameters are invalid.

    ``fields`` maps every violated field to a human-readable reason; callers
    render them as form errors, so validation collects all of them instead of
    stopping at the first.
    """

    code = "invalid_escrow_params"

    def __init__(self, fields: dict[str, str]):
        self.fields = dict(fields)
        summary = "; ".join(f"{k}: {v}" for k, v in self.fields.items())
        super().__init__(f"Invalid escrow parameters ({summary})")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["fields"] = dict(self.fields)
        return d


class CryptoUnavailable(EscrowError):
    """The hash-lock primitive is missing or failed its self test."""

    code = "crypto_unavailable"


class SigningServiceUnavailable(EscrowError):
    """The delegated-signing provider could not be reached."""

    code = "signing_service_unavailable"
    retriable = True


class SigningTimeout(EscrowError):
    """A signing call or signing request was not answered in time."""

    code = "signing_timeout"
    retriable = True


class InvalidStateTransition(EscrowError):
    """The requested operation is not allowed from the contract's state."""

    code = "invalid_state_transition"

    def __init__(self, state: str, event: str, detail: str = ""):
        msg = f"Cannot apply {event} to contract in state {state!r}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.state = state
        self.event = event


class InvalidEscrowReference(EscrowError):
    """OfferSequence / owner do not identify the escrow that was created."""

    code = "invalid_escrow_reference"


class ContractNotFound(EscrowError):
    code = "contract_not_found"

    def __init__(self, contract_id: str):
        super().__init__(f"Escrow contract {contract_id} not found")
        self.contract_id = contract_id


class ConfigError(EscrowError):
    """Startup configuration is inconsistent (e.g. mock conditions in production)."""

    code = "config_error"


class SigningServiceError(EscrowError):
    """The provider answered but refused the request (4xx, malformed reply)."""

    code = "signing_service_error"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
