"""
Process-wide escrow contract store.

The store is the only owner of ``EscrowContract`` records.  Every
read-modify-write of a contract happens inside ``store.locked(id)``, which
holds a per-contract ``asyncio.Lock``; operations on different contracts
never wait on each other.

When a ``ContractRepository`` is attached, every ``save`` writes through to
SQLite and ``load`` restores the store at startup.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Optional

from escrowpay_core.contract import STATE_PENDING, EscrowContract
from escrowpay_core.errors import ContractNotFound, InvalidStateTransition

if TYPE_CHECKING:
    from escrowpay_core.storage import ContractRepository

logger = logging.getLogger("escrowpay_store")


class ContractStore:
    """In-memory contract registry with per-contract serialisation."""

    def __init__(self, repository: Optional[ContractRepository] = None):
        self._contracts: dict[str, EscrowContract] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.repository = repository

    def __len__(self) -> int:
        return len(self._contracts)

    def __contains__(self, contract_id: str) -> bool:
        return contract_id in self._contracts

    # ── persistence ──────────────────────────────────────────────

    def load(self) -> int:
        """Restore contracts from the repository.  Returns how many were loaded."""
        if self.repository is None:
            return 0
        for contract in self.repository.load_contracts():
            self._contracts[contract.id] = contract
        logger.info(f"Loaded {len(self._contracts)} escrow contracts from storage")
        return len(self._contracts)

    def save(self, contract: EscrowContract) -> None:
        if self.repository is not None:
            self.repository.save_contract(contract)

    # ── access ───────────────────────────────────────────────────

    def add(self, contract: EscrowContract) -> EscrowContract:
        if contract.id in self._contracts:
            raise ValueError(f"Duplicate contract id {contract.id}")
        self._contracts[contract.id] = contract
        self.save(contract)
        return contract

    def get(self, contract_id: str) -> EscrowContract:
        contract = self._contracts.get(contract_id)
        if contract is None:
            raise ContractNotFound(contract_id)
        return contract

    def snapshot(self, contract_id: str) -> EscrowContract:
        return self.get(contract_id).snapshot()

    def _lock_for(self, contract_id: str) -> asyncio.Lock:
        lock = self._locks.get(contract_id)
        if lock is None:
            lock = self._locks[contract_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def locked(self, contract_id: str) -> AsyncIterator[EscrowContract]:
        """Hold the contract's lock; changes are saved when the block exits."""
        contract = self.get(contract_id)
        async with self._lock_for(contract_id):
            try:
                yield contract
            finally:
                self.save(contract)

    # ── queries ──────────────────────────────────────────────────

    def find_by_booking(self, booking_id: str) -> list[EscrowContract]:
        return [c for c in self._contracts.values() if c.booking_id == booking_id]

    def get_pending(self) -> list[EscrowContract]:
        return [c for c in self._contracts.values() if c.state == STATE_PENDING]

    def count_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for c in self._contracts.values():
            counts[c.state] = counts.get(c.state, 0) + 1
        return counts

    def archive(self, contract_id: str) -> EscrowContract:
        """Drop a settled contract from memory (it stays in the repository)."""
        contract = self.get(contract_id)
        if not contract.is_terminal:
            raise InvalidStateTransition(contract.state, "archive", "only settled contracts can be archived")
        del self._contracts[contract_id]
        self._locks.pop(contract_id, None)
        return contract


_STORE: ContractStore | None = None


def init_store(repository: Optional[ContractRepository] = None) -> ContractStore:
    """Create the process-wide store.  Call once at startup."""
    global _STORE
    _STORE = ContractStore(repository)
    _STORE.load()
    return _STORE


def get_store() -> ContractStore:
    if _STORE is None:
        raise RuntimeError("Contract store not initialised; call init_store() first")
    return _STORE
