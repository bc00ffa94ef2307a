"""
Escrow contract records and their lifecycle.

A contract tracks one conditional payment from local creation to
settlement:

    created ──► pending ──► finished
       │           ├──────► cancelled
       │           └──────► expired
       └──────────────────► cancelled   (aborted before submission)

Status is a sum type: each state is its own frozen dataclass carrying only
the fields that make sense for it, so e.g. a ``Finished`` without a
transaction hash cannot be built.  ``Pending`` covers both "EscrowCreate
awaiting signature" and "escrow live on ledger" (``escrow_live``), and
records at most one in-flight Finish/Cancel request.

Contracts change only through ``EscrowContract.apply``; an event that is
not allowed from the current state raises ``InvalidStateTransition`` and
leaves the contract untouched.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from escrowpay_core.conditions import verify_fulfillment
from escrowpay_core.errors import InvalidStateTransition

STATE_CREATED = "created"
STATE_PENDING = "pending"
STATE_FINISHED = "finished"
STATE_CANCELLED = "cancelled"
STATE_EXPIRED = "expired"

TERMINAL_STATES = frozenset({STATE_FINISHED, STATE_CANCELLED, STATE_EXPIRED})

SETTLE_FINISH = "finish"
SETTLE_CANCEL = "cancel"


# ═══════════════════════════════════════════════════════════════════
#  Status variants
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SettlementRequest:
    kind: str          # SETTLE_FINISH or SETTLE_CANCEL
    request_id: str
    at: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class Created:
    at: float
    state = STATE_CREATED


@dataclass(frozen=True)
class Pending:
    request_id: str
    at: float
    escrow_live: bool = False
    create_tx_hash: Optional[str] = None
    settlement: Optional[SettlementRequest] = None
    reason: Optional[str] = None
    state = STATE_PENDING

    @property
    def active_request_id(self) -> str:
        """The signing request whose outcome is still awaited."""
        if self.settlement is not None:
            return self.settlement.request_id
        return self.request_id


@dataclass(frozen=True)
class Finished:
    tx_hash: str
    at: float
    state = STATE_FINISHED


@dataclass(frozen=True)
class Cancelled:
    reason: str
    at: float
    tx_hash: Optional[str] = None
    state = STATE_CANCELLED


@dataclass(frozen=True)
class Expired:
    reason: str
    at: float
    state = STATE_EXPIRED


ContractStatus = Union[Created, Pending, Finished, Cancelled, Expired]


def status_to_dict(status: ContractStatus) -> dict:
    d: dict = {"state": status.state, "at": status.at}
    if isinstance(status, Pending):
        d.update({
            "request_id": status.request_id,
            "escrow_live": status.escrow_live,
            "create_tx_hash": status.create_tx_hash,
            "reason": status.reason,
            "settlement": (
                {"kind": status.settlement.kind,
                 "request_id": status.settlement.request_id,
                 "at": status.settlement.at,
                 "reason": status.settlement.reason}
                if status.settlement else None
            ),
        })
    elif isinstance(status, Finished):
        d["tx_hash"] = status.tx_hash
    elif isinstance(status, Cancelled):
        d["reason"] = status.reason
        d["tx_hash"] = status.tx_hash
    elif isinstance(status, Expired):
        d["reason"] = status.reason
    return d


def status_from_dict(d: dict) -> ContractStatus:
    state = d["state"]
    if state == STATE_CREATED:
        return Created(at=d["at"])
    if state == STATE_PENDING:
        s = d.get("settlement")
        return Pending(
            request_id=d["request_id"],
            at=d["at"],
            escrow_live=bool(d.get("escrow_live")),
            create_tx_hash=d.get("create_tx_hash"),
            settlement=SettlementRequest(s["kind"], s["request_id"], s["at"], s.get("reason")) if s else None,
            reason=d.get("reason"),
        )
    if state == STATE_FINISHED:
        return Finished(tx_hash=d["tx_hash"], at=d["at"])
    if state == STATE_CANCELLED:
        return Cancelled(reason=d["reason"], at=d["at"], tx_hash=d.get("tx_hash"))
    if state == STATE_EXPIRED:
        return Expired(reason=d["reason"], at=d["at"])
    raise ValueError(f"Unknown contract state {state!r}")


# ═══════════════════════════════════════════════════════════════════
#  Events
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SigningAccepted:
    request_id: str
    sequence: Optional[int] = None


@dataclass(frozen=True)
class UserAborted:
    reason: str = "Aborted by user"


@dataclass(frozen=True)
class CreateValidated:
    tx_hash: str


@dataclass(frozen=True)
class SettlementRequested:
    kind: str
    request_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class FinishValidated:
    tx_hash: str
    fulfillment: str = field(repr=False)


@dataclass(frozen=True)
class CancelValidated:
    tx_hash: str
    reason: str = "Escrow cancelled"


@dataclass(frozen=True)
class SigningRejected:
    reason: str = "Signing request rejected"


@dataclass(frozen=True)
class SigningExpired:
    reason: str = "Signing request expired"


@dataclass(frozen=True)
class LedgerRejected:
    result: str


@dataclass(frozen=True)
class WindowElapsed:
    grace_seconds: int = 0
    reason: str = "Finish window elapsed without settlement"


Event = Union[
    SigningAccepted, UserAborted, CreateValidated, SettlementRequested,
    FinishValidated, CancelValidated, SigningRejected, SigningExpired,
    LedgerRejected, WindowElapsed,
]


# ═══════════════════════════════════════════════════════════════════
#  Contract
# ═══════════════════════════════════════════════════════════════════

def new_contract_id() -> str:
    return f"esc_{uuid.uuid4().hex}"


@dataclass
class EscrowContract:
    """One conditional payment, owned by the contract store."""
    id: str
    from_address: str
    to_address: str
    amount: str                 # XRP, decimal string
    condition: str
    fulfillment: str = field(repr=False)
    preimage: str = field(default="", repr=False)
    sequence: Optional[int] = None
    booking_id: Optional[str] = None
    purpose: str = "Booking payment"
    memo: Optional[str] = None
    destination_tag: Optional[int] = None
    finish_after: Optional[int] = None
    cancel_after: Optional[int] = None
    mock: bool = False
    created_at: float = field(default_factory=time.time)
    status: ContractStatus = None  # type: ignore[assignment]
    history: list[tuple[str, float, Optional[str]]] = field(default_factory=list)

    def __post_init__(self):
        if self.status is None:
            self.status = Created(at=self.created_at)
            self.history.append((STATE_CREATED, self.created_at, None))

    @property
    def state(self) -> str:
        return self.status.state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def request_id(self) -> Optional[str]:
        return self.status.request_id if isinstance(self.status, Pending) else None

    # ── transitions ──────────────────────────────────────────────

    def apply(self, event: Event, now: float | None = None) -> ContractStatus:
        """Apply *event*; on success the new status is stored and returned."""
        if now is None:
            now = time.time()
        new_status = self._next_status(event, now)
        if new_status.state != self.state or getattr(new_status, "reason", None):
            self.history.append((new_status.state, now, getattr(new_status, "reason", None)))
        self.status = new_status
        return new_status

    def _reject(self, event: Event, detail: str = "") -> InvalidStateTransition:
        return InvalidStateTransition(self.state, type(event).__name__, detail)

    def _next_status(self, event: Event, now: float) -> ContractStatus:
        s = self.status
        if self.is_terminal:
            raise self._reject(event, "contract already settled")

        if isinstance(s, Created):
            if isinstance(event, SigningAccepted):
                if not event.request_id:
                    raise self._reject(event, "signing request id missing")
                if event.sequence is not None:
                    self.sequence = event.sequence
                return Pending(request_id=event.request_id, at=now)
            if isinstance(event, UserAborted):
                return Cancelled(reason=event.reason, at=now)
            raise self._reject(event)

        if not isinstance(s, Pending):
            raise self._reject(event, f"unhandled status {type(s).__name__}")

        if not s.escrow_live:
            if isinstance(event, CreateValidated):
                return replace(s, escrow_live=True, create_tx_hash=event.tx_hash, at=now, reason=None)
            if isinstance(event, SigningRejected):
                return Cancelled(reason=event.reason, at=now)
            if isinstance(event, SigningExpired):
                return Expired(reason=event.reason, at=now)
            if isinstance(event, LedgerRejected):
                return Cancelled(reason=f"EscrowCreate failed on ledger: {event.result}", at=now)
            raise self._reject(event, "escrow is not live on the ledger yet")

        settlement = s.settlement
        if settlement is None:
            if isinstance(event, SettlementRequested):
                if event.kind not in (SETTLE_FINISH, SETTLE_CANCEL):
                    raise self._reject(event, f"unknown settlement kind {event.kind!r}")
                return replace(
                    s, settlement=SettlementRequest(event.kind, event.request_id, now, event.reason),
                    at=now, reason=None,
                )
            if isinstance(event, WindowElapsed):
                if self.finish_after is None:
                    raise self._reject(event, "contract has no finish window")
                if now < self.finish_after + event.grace_seconds:
                    raise self._reject(event, "finish window still open")
                return Expired(reason=event.reason, at=now)
            raise self._reject(event, "no settlement request in flight")

        if isinstance(event, SettlementRequested):
            raise self._reject(event, f"{settlement.kind} request already in flight")
        if isinstance(event, FinishValidated):
            if settlement.kind != SETTLE_FINISH:
                raise self._reject(event, "in-flight request is not a finish")
            if not verify_fulfillment(self.condition, event.fulfillment):
                raise self._reject(event, "validated fulfillment does not match condition")
            return Finished(tx_hash=event.tx_hash, at=now)
        if isinstance(event, CancelValidated):
            if settlement.kind != SETTLE_CANCEL:
                raise self._reject(event, "in-flight request is not a cancel")
            if self.cancel_after is not None and now < self.cancel_after:
                raise self._reject(event, "CancelAfter has not passed")
            return Cancelled(reason=event.reason, at=now, tx_hash=event.tx_hash)
        if isinstance(event, (SigningRejected, SigningExpired)):
            return replace(s, settlement=None, at=now, reason=f"{settlement.kind}: {event.reason}")
        if isinstance(event, LedgerRejected):
            return replace(
                s, settlement=None, at=now,
                reason=f"{settlement.kind} rejected by ledger: {event.result}",
            )
        raise self._reject(event)

    # ── views ────────────────────────────────────────────────────

    def snapshot(self) -> EscrowContract:
        """Detached read-only copy with the secrets stripped."""
        return replace(self, fulfillment="", preimage="", history=list(self.history))

    def to_dict(self, include_secrets: bool = False) -> dict:
        d = {
            "id": self.id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": self.amount,
            "condition": self.condition,
            "sequence": self.sequence,
            "booking_id": self.booking_id,
            "purpose": self.purpose,
            "memo": self.memo,
            "destination_tag": self.destination_tag,
            "finish_after": self.finish_after,
            "cancel_after": self.cancel_after,
            "mock": self.mock,
            "created_at": self.created_at,
            "status": status_to_dict(self.status),
            "history": [list(h) for h in self.history],
        }
        if include_secrets:
            d["fulfillment"] = self.fulfillment
            d["preimage"] = self.preimage
        return d

    @classmethod
    def from_dict(cls, d: dict) -> EscrowContract:
        return cls(
            id=d["id"],
            from_address=d["from_address"],
            to_address=d["to_address"],
            amount=d["amount"],
            condition=d["condition"],
            fulfillment=d.get("fulfillment", ""),
            preimage=d.get("preimage", ""),
            sequence=d.get("sequence"),
            booking_id=d.get("booking_id"),
            purpose=d.get("purpose", "Booking payment"),
            memo=d.get("memo"),
            destination_tag=d.get("destination_tag"),
            finish_after=d.get("finish_after"),
            cancel_after=d.get("cancel_after"),
            mock=bool(d.get("mock", False)),
            created_at=d["created_at"],
            status=status_from_dict(d["status"]),
            history=[tuple(h) for h in d.get("history", [])],
        )
