"""
Signing-request orchestrator and application facade.

``EscrowOrchestrator`` sequences the condition strategy, the transaction
builders, the ledger client and the signing provider, and turns whatever
the provider and ledger report into contract events.  It never keeps a
copy of a contract: everything goes through ``ContractStore.locked`` so
two operations on one contract are strictly serialised, including the
network call that decides the transition.

``EscrowService`` wraps the orchestrator for application layers: every
call returns an ``EscrowResult`` and a ``pending`` contract counts as
success.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from xrpl.models.transactions import Memo

from escrowpay_core.conditions import ConditionStrategy, build_condition_strategy
from escrowpay_core.config import EscrowPayConfig, EscrowConfig, SigningConfig
from escrowpay_core.contract import (
    SETTLE_CANCEL,
    SETTLE_FINISH,
    STATE_CREATED,
    CancelValidated,
    ContractStatus,
    CreateValidated,
    EscrowContract,
    FinishValidated,
    LedgerRejected,
    Pending,
    SettlementRequest,
    SettlementRequested,
    SigningAccepted,
    SigningExpired,
    SigningRejected,
    UserAborted,
    WindowElapsed,
    new_contract_id,
    status_to_dict,
)
from escrowpay_core.errors import (
    CryptoUnavailable,
    EscrowError,
    InvalidEscrowParams,
    InvalidEscrowReference,
    InvalidStateTransition,
    SigningTimeout,
)
from escrowpay_core.ledger_client import LedgerClient, LedgerEscrow, LedgerTxResult, RippledClient
from escrowpay_core.signing import (
    CancelResult,
    SigningOptions,
    SigningRequestRef,
    SigningService,
    XamanClient,
)
from escrowpay_core.store import ContractStore
from escrowpay_core.transaction import (
    build_escrow_cancel,
    build_escrow_create,
    build_escrow_finish,
    make_memo,
    to_txjson,
)
from escrowpay_core.xrpl_utils import drops_to_xrp

logger = logging.getLogger("escrowpay_orchestrator")

T = TypeVar("T")

MEMO_TYPE_BOOKING = "booking_id"
MEMO_TYPE_NOTE = "escrow_memo"


# ═══════════════════════════════════════════════════════════════════
#  Parameters
# ═══════════════════════════════════════════════════════════════════

_PARAM_ALIASES = {
    "from": "from_address",
    "fromAddress": "from_address",
    "to": "to_address",
    "toAddress": "to_address",
    "bookingId": "booking_id",
    "destinationTag": "destination_tag",
    "finishAfter": "finish_after",
    "cancelAfter": "cancel_after",
}


@dataclass
class EscrowParams:
    """Booking-side request for a new escrow."""
    from_address: str
    to_address: str
    amount: str
    booking_id: Optional[str] = None
    purpose: Optional[str] = None
    memo: Optional[str] = None
    destination_tag: Optional[int] = None
    finish_after: Optional[int] = None    # Unix seconds
    cancel_after: Optional[int] = None    # Unix seconds

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EscrowParams:
        """Accept both snake_case and the camelCase used by web clients."""
        data: dict[str, Any] = {}
        for key, value in d.items():
            data[_PARAM_ALIASES.get(key, key)] = value
        missing = {
            name: "This field is required"
            for name in ("from_address", "to_address", "amount")
            if data.get(name) in (None, "")
        }
        if missing:
            raise InvalidEscrowParams(missing)
        amount = data["amount"]
        if isinstance(amount, (int, float)) and not isinstance(amount, bool):
            amount = str(amount)
        return cls(
            from_address=str(data["from_address"]),
            to_address=str(data["to_address"]),
            amount=amount,
            booking_id=data.get("booking_id"),
            purpose=data.get("purpose"),
            memo=data.get("memo"),
            destination_tag=data.get("destination_tag"),
            finish_after=data.get("finish_after"),
            cancel_after=data.get("cancel_after"),
        )


# ═══════════════════════════════════════════════════════════════════
#  Orchestrator
# ═══════════════════════════════════════════════════════════════════

class EscrowOrchestrator:
    """Drives escrow contracts through the signing provider and the ledger."""

    def __init__(
        self,
        store: ContractStore,
        conditions: ConditionStrategy,
        signing: SigningService,
        ledger: LedgerClient,
        escrow_cfg: EscrowConfig | None = None,
        signing_cfg: SigningConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.conditions = conditions
        self.signing = signing
        self.ledger = ledger
        self.escrow_cfg = escrow_cfg or EscrowConfig()
        self.signing_cfg = signing_cfg or SigningConfig()
        self.clock = clock
        self._payer_locks: dict[str, asyncio.Lock] = {}

    @property
    def allow_mock(self) -> bool:
        return not self.escrow_cfg.is_production

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        timeout = self.signing_cfg.request_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(f"{what} did not complete within {timeout}s")
            raise SigningTimeout(f"{what} did not complete within {timeout}s") from exc

    def _options(self, contract: EscrowContract, action: str, instruction: str) -> SigningOptions:
        return SigningOptions(
            expire_minutes=self.signing_cfg.expire_minutes,
            instruction=instruction,
            identifier=f"escrow-{action}-{contract.id}",
            blob={
                "contract_id": contract.id,
                "booking_id": contract.booking_id,
                "purpose": contract.purpose,
            },
        )

    @staticmethod
    def _memos(contract: EscrowContract) -> list[Memo]:
        memos = []
        if contract.booking_id:
            memos.append(make_memo(contract.booking_id, MEMO_TYPE_BOOKING, "text/plain"))
        note = contract.memo or contract.purpose
        if note:
            memos.append(make_memo(note, MEMO_TYPE_NOTE, "text/plain"))
        return memos

    # ── EscrowCreate ─────────────────────────────────────────────

    async def start_escrow_create(self, params: EscrowParams) -> tuple[str, SigningRequestRef]:
        """
        Create a contract and submit its EscrowCreate for signing.

        The contract is stored in ``created`` before any network call.  If the
        submission fails, the raised error carries ``contract_id`` and the
        contract stays in ``created``; retry with ``submit_escrow_create`` or
        give up with ``abort_escrow``.
        """
        bundle = self.conditions.generate()
        if bundle.mock and not self.allow_mock:
            raise CryptoUnavailable("Mock conditions cannot be used in production")

        purpose = params.purpose or self.escrow_cfg.default_purpose
        # Validate everything locally first; no contract is allocated for
        # parameters that could never be submitted.
        build_escrow_create(
            params.from_address, params.to_address, params.amount, bundle.condition,
            params.finish_after, params.cancel_after, params.destination_tag,
            max_amount=self.escrow_cfg.max_amount, allow_mock=self.allow_mock,
        )

        contract = EscrowContract(
            id=new_contract_id(),
            from_address=params.from_address,
            to_address=params.to_address,
            amount=str(params.amount),
            condition=bundle.condition,
            fulfillment=bundle.fulfillment,
            preimage=bundle.preimage,
            booking_id=params.booking_id,
            purpose=purpose,
            memo=params.memo,
            destination_tag=params.destination_tag,
            finish_after=params.finish_after,
            cancel_after=params.cancel_after,
            mock=bundle.mock,
            created_at=self.clock(),
        )
        self.store.add(contract)
        logger.info(
            f"Escrow contract allocated: {contract.amount} XRP "
            f"{contract.from_address} -> {contract.to_address}"
            + (" (MOCK condition)" if contract.mock else ""),
            extra={"contract_id": contract.id},
        )
        try:
            ref = await self.submit_escrow_create(contract.id)
        except EscrowError as exc:
            exc.contract_id = contract.id  # type: ignore[attr-defined]
            raise
        return contract.id, ref

    def _payer_lock(self, address: str) -> asyncio.Lock:
        lock = self._payer_locks.get(address)
        if lock is None:
            lock = self._payer_locks[address] = asyncio.Lock()
        return lock

    def _allocate_sequence(self, contract: EscrowContract, ledger_sequence: int) -> int:
        """
        Lowest sequence at or above the ledger's that no other unsigned
        EscrowCreate from the same payer has pinned.  Caller holds the payer lock.
        """
        pinned = {
            c.sequence for c in self.store.get_pending()
            if c.id != contract.id
            and c.from_address == contract.from_address
            and c.sequence is not None
            and not c.status.escrow_live
        }
        sequence = ledger_sequence
        while sequence in pinned:
            sequence += 1
        return sequence

    async def submit_escrow_create(self, contract_id: str) -> SigningRequestRef:
        """Submit (or re-submit) the EscrowCreate of a contract still in ``created``."""
        async with self.store.locked(contract_id) as contract:
            if contract.state != STATE_CREATED:
                raise InvalidStateTransition(
                    contract.state, "SigningAccepted", "EscrowCreate was already submitted"
                )
            # Held until the sequence is recorded on the contract, so two
            # creates from one payer never pin the same number.
            async with self._payer_lock(contract.from_address):
                ledger_sequence = await self._call(
                    self.ledger.account_sequence(contract.from_address), "Account sequence lookup"
                )
                sequence = self._allocate_sequence(contract, ledger_sequence)
                tx = build_escrow_create(
                    contract.from_address, contract.to_address, contract.amount,
                    contract.condition, contract.finish_after, contract.cancel_after,
                    contract.destination_tag,
                    max_amount=self.escrow_cfg.max_amount,
                    memos=self._memos(contract),
                    sequence=sequence,
                    allow_mock=contract.mock and self.allow_mock,
                )
                ref = await self._call(
                    self.signing.create_signing_request(
                        to_txjson(tx),
                        self._options(
                            contract, "create",
                            f"Lock {drops_to_xrp(tx.amount)} XRP in escrow for {contract.purpose}",
                        ),
                    ),
                    "EscrowCreate signing request",
                )
                contract.apply(SigningAccepted(ref.request_id, sequence), self.clock())
            logger.info(
                f"EscrowCreate sent for signing: request {ref.request_id}, sequence {sequence}"
                + (f" (ledger at {ledger_sequence})" if sequence != ledger_sequence else ""),
                extra={"contract_id": contract.id},
            )
            return ref

    # ── Polling ──────────────────────────────────────────────────

    def _check_window(self, status: Pending, now: float, what: str) -> None:
        started = status.settlement.at if status.settlement is not None else status.at
        window = self.signing_cfg.window_seconds
        if now - started > window:
            raise SigningTimeout(f"{what} after {window}s")

    @staticmethod
    def _validated_event(
        contract: EscrowContract, settlement: Optional[SettlementRequest], tx_hash: str, tx: LedgerTxResult,
    ) -> Any:
        if not tx.succeeded:
            return LedgerRejected(tx.result or "unknown")
        if settlement is None:
            if tx.sequence is not None and contract.sequence is not None and tx.sequence != contract.sequence:
                raise InvalidEscrowReference(
                    f"EscrowCreate validated with sequence {tx.sequence}, expected {contract.sequence}"
                )
            return CreateValidated(tx_hash)
        if settlement.kind == SETTLE_FINISH:
            return FinishValidated(tx_hash, tx.fulfillment or "")
        return CancelValidated(tx_hash, settlement.reason or "Escrow cancelled")

    async def poll_signing_status(self, contract_id: str) -> ContractStatus:
        """
        Pull the outstanding signing request and apply whatever it reports.

        Repeated calls with nothing new from the provider or the ledger leave
        the contract unchanged.  A request still unanswered after the signing
        window raises ``SigningTimeout``; so does a signed transaction that
        has not validated by then.  The contract is left as it is in both
        cases.  A signed transaction the provider could not get applied
        (``tef``/``tem``/``tel``) is handled as a ledger rejection.
        """
        async with self.store.locked(contract_id) as contract:
            status = contract.status
            if not isinstance(status, Pending):
                return status
            settlement = status.settlement
            if status.escrow_live and settlement is None:
                return status

            request_id = status.active_request_id
            sig = await self._call(
                self.signing.get_signing_request_status(request_id), "Signing status lookup"
            )
            now = self.clock()

            if sig.signed:
                tx = None
                if sig.tx_hash:
                    tx = await self._call(self.ledger.transaction(sig.tx_hash), "Ledger lookup")
                if tx is not None and tx.found and tx.validated:
                    event: Any = self._validated_event(contract, settlement, sig.tx_hash, tx)
                elif sig.dispatch_failed:
                    event = LedgerRejected(sig.dispatched_result or "unknown")
                else:
                    self._check_window(status, now, f"Signed transaction {sig.tx_hash} not validated")
                    logger.debug(
                        f"Transaction {sig.tx_hash} not validated yet",
                        extra={"contract_id": contract.id},
                    )
                    return status
            elif sig.rejected:
                event = SigningRejected()
            elif sig.expired:
                event = SigningExpired()
            else:
                self._check_window(status, now, f"Signing request {request_id} unanswered")
                return status

            new_status = contract.apply(event, now)
            logger.info(
                f"{type(event).__name__} -> {new_status.state}"
                + (f" ({new_status.reason})" if getattr(new_status, "reason", None) else ""),
                extra={"contract_id": contract.id},
            )
            return new_status

    # ── Settlement ───────────────────────────────────────────────

    @staticmethod
    def _require_settleable(contract: EscrowContract, event: str) -> Pending:
        status = contract.status
        if contract.is_terminal:
            raise InvalidStateTransition(contract.state, event, "contract already settled")
        if not isinstance(status, Pending) or not status.escrow_live:
            raise InvalidStateTransition(contract.state, event, "escrow is not live on the ledger yet")
        if status.settlement is not None:
            raise InvalidStateTransition(
                contract.state, event, f"{status.settlement.kind} request already in flight"
            )
        return status

    @staticmethod
    def _check_reference(contract: EscrowContract, offer_sequence: Optional[int]) -> int:
        if contract.sequence is None:
            raise InvalidEscrowReference(f"Contract {contract.id} has no recorded sequence")
        if offer_sequence is not None and offer_sequence != contract.sequence:
            raise InvalidEscrowReference(
                f"OfferSequence {offer_sequence} does not match escrow sequence {contract.sequence}"
            )
        return contract.sequence

    async def _require_ledger_escrow(self, contract: EscrowContract, sequence: int) -> LedgerEscrow:
        """The escrow must still exist on the ledger and carry this contract's condition."""
        entry = await self._call(
            self.ledger.escrow_entry(contract.from_address, sequence), "Escrow lookup"
        )
        if entry is None:
            raise InvalidEscrowReference(
                f"No escrow {contract.from_address}:{sequence} on the validated ledger"
            )
        if (entry.condition or "").upper() != contract.condition.upper():
            raise InvalidEscrowReference(
                f"Escrow {contract.from_address}:{sequence} carries a different condition"
            )
        return entry

    async def start_escrow_finish(
        self,
        contract_id: str,
        *,
        finisher: Optional[str] = None,
        offer_sequence: Optional[int] = None,
    ) -> SigningRequestRef:
        """Submit an EscrowFinish carrying the stored fulfillment."""
        async with self.store.locked(contract_id) as contract:
            self._require_settleable(contract, "SettlementRequested")
            sequence = self._check_reference(contract, offer_sequence)
            now = self.clock()
            if contract.finish_after is not None and now < contract.finish_after:
                raise InvalidStateTransition(contract.state, "SettlementRequested", "FinishAfter has not passed")
            await self._require_ledger_escrow(contract, sequence)
            tx = build_escrow_finish(
                contract.from_address, sequence, contract.condition, contract.fulfillment,
                account=finisher, allow_mock=contract.mock and self.allow_mock,
            )
            ref = await self._call(
                self.signing.create_signing_request(
                    to_txjson(tx),
                    self._options(contract, "finish", f"Release {contract.amount} XRP to {contract.to_address}"),
                ),
                "EscrowFinish signing request",
            )
            contract.apply(SettlementRequested(SETTLE_FINISH, ref.request_id), self.clock())
            logger.info(f"EscrowFinish sent for signing: request {ref.request_id}",
                        extra={"contract_id": contract.id})
            return ref

    async def start_escrow_cancel(
        self,
        contract_id: str,
        reason: str = "Escrow cancelled",
        *,
        canceller: Optional[str] = None,
        offer_sequence: Optional[int] = None,
    ) -> SigningRequestRef:
        """Submit an EscrowCancel once CancelAfter has passed on the local clock."""
        async with self.store.locked(contract_id) as contract:
            self._require_settleable(contract, "SettlementRequested")
            sequence = self._check_reference(contract, offer_sequence)
            if contract.cancel_after is None:
                raise InvalidStateTransition(contract.state, "SettlementRequested", "escrow has no CancelAfter")
            if self.clock() < contract.cancel_after:
                raise InvalidStateTransition(contract.state, "SettlementRequested", "CancelAfter has not passed")
            await self._require_ledger_escrow(contract, sequence)
            tx = build_escrow_cancel(contract.from_address, sequence, account=canceller)
            ref = await self._call(
                self.signing.create_signing_request(
                    to_txjson(tx),
                    self._options(contract, "cancel", f"Return {contract.amount} XRP: {reason}"),
                ),
                "EscrowCancel signing request",
            )
            contract.apply(SettlementRequested(SETTLE_CANCEL, ref.request_id, reason), self.clock())
            logger.info(f"EscrowCancel sent for signing: request {ref.request_id}",
                        extra={"contract_id": contract.id})
            return ref

    # ── Housekeeping ─────────────────────────────────────────────

    async def abort_escrow(self, contract_id: str, reason: str = "Aborted by user") -> ContractStatus:
        """Cancel a contract whose EscrowCreate was never accepted for signing."""
        async with self.store.locked(contract_id) as contract:
            new_status = contract.apply(UserAborted(reason), self.clock())
            logger.info(f"Escrow aborted before submission: {reason}",
                        extra={"contract_id": contract.id})
            return new_status

    async def withdraw_signing_request(self, contract_id: str) -> CancelResult:
        """Ask the provider to void the outstanding signing request."""
        async with self.store.locked(contract_id) as contract:
            status = contract.status
            if not isinstance(status, Pending) or (status.escrow_live and status.settlement is None):
                raise InvalidStateTransition(contract.state, "withdraw", "no signing request outstanding")
            result = await self._call(
                self.signing.cancel_signing_request(status.active_request_id),
                "Signing request cancellation",
            )
            if result.cancelled:
                contract.apply(SigningRejected("Signing request withdrawn"), self.clock())
                logger.info(f"Signing request {status.active_request_id} withdrawn",
                            extra={"contract_id": contract.id})
            else:
                logger.info(
                    f"Provider refused to withdraw {status.active_request_id}: {result.reason}",
                    extra={"contract_id": contract.id},
                )
            return result

    async def lookup_ledger_escrow(self, contract_id: str) -> Optional[LedgerEscrow]:
        """The contract's escrow as the validated ledger has it; None once it is gone."""
        contract = self.store.snapshot(contract_id)
        if contract.sequence is None:
            raise InvalidEscrowReference(f"Contract {contract.id} has no recorded sequence")
        return await self._call(
            self.ledger.escrow_entry(contract.from_address, contract.sequence), "Escrow lookup"
        )

    async def expire_overdue(self, now: float | None = None) -> list[str]:
        """Mark live, unsettled escrows past FinishAfter plus grace as expired."""
        if now is None:
            now = self.clock()
        grace = self.escrow_cfg.expiry_grace_seconds
        expired = []
        for contract in self.store.get_pending():
            if contract.finish_after is None or now < contract.finish_after + grace:
                continue
            async with self.store.locked(contract.id) as c:
                try:
                    c.apply(WindowElapsed(grace_seconds=grace), now)
                except InvalidStateTransition as exc:
                    logger.debug(f"Not expiring: {exc}", extra={"contract_id": c.id})
                    continue
            logger.info("Escrow expired: finish window elapsed", extra={"contract_id": contract.id})
            expired.append(contract.id)
        return expired


# ═══════════════════════════════════════════════════════════════════
#  Application facade
# ═══════════════════════════════════════════════════════════════════

@dataclass
class EscrowResult:
    success: bool
    contract: Optional[dict] = None
    signing_request: Optional[dict] = None
    status: Optional[dict] = None
    ledger_escrow: Optional[dict] = None
    error: Optional[str] = None
    message: Optional[str] = None
    fields: dict[str, str] = field(default_factory=dict)
    retriable: bool = False
    contract_id: Optional[str] = None

    @classmethod
    def failure(cls, exc: EscrowError) -> EscrowResult:
        return cls(
            success=False,
            error=exc.code,
            message=exc.message,
            fields=dict(getattr(exc, "fields", {})),
            retriable=exc.retriable,
            contract_id=getattr(exc, "contract_id", None),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"success": self.success}
        for key in ("contract_id", "contract", "signing_request", "status", "ledger_escrow"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        if not self.success:
            d["error"] = self.error
            d["message"] = self.message
            d["retriable"] = self.retriable
            if self.fields:
                d["fields"] = self.fields
        return d


class EscrowService:
    """Result-returning facade used by the REST layer and booking code."""

    def __init__(self, orchestrator: EscrowOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store

    @classmethod
    def from_config(
        cls,
        cfg: EscrowPayConfig,
        store: ContractStore,
        signing: SigningService | None = None,
        ledger: LedgerClient | None = None,
    ) -> EscrowService:
        conditions = build_condition_strategy(cfg.escrow, cfg.conditions)
        if signing is None:
            signing = XamanClient(
                cfg.signing.api_key, cfg.signing.api_secret,
                base_url=cfg.signing.base_url, timeout=cfg.signing.request_timeout,
            )
        if ledger is None:
            ledger = RippledClient(cfg.ledger.rpc_url, timeout=cfg.ledger.request_timeout)
        logger.info(f"Escrow service ready ({cfg.escrow.environment}, {cfg.escrow.network})")
        return cls(EscrowOrchestrator(
            store, conditions, signing, ledger,
            escrow_cfg=cfg.escrow, signing_cfg=cfg.signing,
        ))

    async def close(self) -> None:
        for client in (self.orchestrator.signing, self.orchestrator.ledger):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    def _contract_view(self, contract_id: str) -> dict:
        return self.store.snapshot(contract_id).to_dict()

    async def _run(
        self, contract_id: Optional[str], op: Callable[[], Awaitable[Any]]
    ) -> tuple[Any, Optional[EscrowResult]]:
        try:
            return await op(), None
        except EscrowError as exc:
            logger.info(f"Escrow operation failed: {exc.code}: {exc.message}",
                        extra={"contract_id": contract_id or getattr(exc, "contract_id", None)})
            return None, EscrowResult.failure(exc)

    async def create_escrow(self, params: EscrowParams | dict) -> EscrowResult:
        async def _op():
            p = params if isinstance(params, EscrowParams) else EscrowParams.from_dict(params)
            return await self.orchestrator.start_escrow_create(p)

        value, failure = await self._run(None, _op)
        if failure is not None:
            if failure.contract_id and failure.contract_id in self.store:
                failure.contract = self._contract_view(failure.contract_id)
            return failure
        contract_id, ref = value
        return EscrowResult(
            success=True,
            contract_id=contract_id,
            contract=self._contract_view(contract_id),
            signing_request=ref.to_dict(),
        )

    async def _settle(self, contract_id: str, op: Callable[[], Awaitable[SigningRequestRef]]) -> EscrowResult:
        ref, failure = await self._run(contract_id, op)
        if failure is not None:
            failure.contract_id = contract_id
            return failure
        return EscrowResult(
            success=True,
            contract_id=contract_id,
            contract=self._contract_view(contract_id),
            signing_request=ref.to_dict(),
        )

    async def finish_escrow(self, contract_id: str, offer_sequence: Optional[int] = None) -> EscrowResult:
        return await self._settle(
            contract_id,
            lambda: self.orchestrator.start_escrow_finish(contract_id, offer_sequence=offer_sequence),
        )

    async def cancel_escrow(
        self, contract_id: str, reason: str = "Escrow cancelled", offer_sequence: Optional[int] = None
    ) -> EscrowResult:
        return await self._settle(
            contract_id,
            lambda: self.orchestrator.start_escrow_cancel(contract_id, reason, offer_sequence=offer_sequence),
        )

    async def poll_escrow(self, contract_id: str) -> EscrowResult:
        status, failure = await self._run(
            contract_id, lambda: self.orchestrator.poll_signing_status(contract_id)
        )
        if failure is not None:
            failure.contract_id = contract_id
            return failure
        return EscrowResult(
            success=True,
            contract_id=contract_id,
            contract=self._contract_view(contract_id),
            status=status_to_dict(status),
        )

    async def abort_escrow(self, contract_id: str, reason: str = "Aborted by user") -> EscrowResult:
        status, failure = await self._run(
            contract_id, lambda: self.orchestrator.abort_escrow(contract_id, reason)
        )
        if failure is not None:
            failure.contract_id = contract_id
            return failure
        return EscrowResult(
            success=True,
            contract_id=contract_id,
            contract=self._contract_view(contract_id),
            status=status_to_dict(status),
        )

    async def get_ledger_escrow(self, contract_id: str) -> EscrowResult:
        entry, failure = await self._run(
            contract_id, lambda: self.orchestrator.lookup_ledger_escrow(contract_id)
        )
        if failure is not None:
            failure.contract_id = contract_id
            return failure
        ledger_escrow: dict[str, Any] = {"exists": entry is not None}
        if entry is not None:
            ledger_escrow.update(entry.to_dict())
        return EscrowResult(
            success=True,
            contract_id=contract_id,
            contract=self._contract_view(contract_id),
            ledger_escrow=ledger_escrow,
        )

    def get_escrow_status(self, contract_id: str) -> EscrowContract:
        """Read-only snapshot; raises ``ContractNotFound`` for unknown ids."""
        return self.store.snapshot(contract_id)
