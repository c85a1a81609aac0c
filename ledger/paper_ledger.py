#!/usr/bin/env python3
"""
In-process ledger for local runs and tests.

Mirrors the settlement contract's state machine and vault accounting.
Deposits and realized PnL are mirrored into the vault by the run services
(record_deposit / record_withdrawal / adjust_vault) so the vault balance
tracks the internal pool the way the on-chain vault would.

Failure injection: put an operation name in ``fail_ops`` to make the next
calls to that operation raise ExternalServiceError.
"""

from __future__ import annotations

import uuid
from typing import Dict, List, Optional, Sequence, Set, Tuple

from pool_accounting import round_usdc
from run_errors import ExternalServiceError

from .base import (
    LEDGER_STATUS_ACTIVE,
    LEDGER_STATUS_PENDING,
    LEDGER_STATUS_SETTLED,
    LedgerAdapter,
    LedgerRunState,
)


class PaperLedger(LedgerAdapter):
    def __init__(self, log):
        super().__init__(log)
        self._runs: Dict[str, LedgerRunState] = {}
        self._vaults: Dict[str, float] = {}
        self._depositors: Dict[str, Set[str]] = {}
        self.settlements: Dict[str, List[Tuple[str, float]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_ops: Set[str] = set()

    def _record(self, op: str, run_id: str) -> None:
        self.calls.append((op, run_id))
        if op in self.fail_ops:
            raise ExternalServiceError("ledger", f"{op} failed for run {run_id} (injected)")

    def call_count(self, op: str, run_id: Optional[str] = None) -> int:
        return sum(1 for o, r in self.calls if o == op and (run_id is None or r == run_id))

    @staticmethod
    def _tx() -> str:
        return f"paper-ledger-{uuid.uuid4().hex[:12]}"

    def _require(self, run_id: str) -> LedgerRunState:
        state = self._runs.get(run_id)
        if state is None:
            raise ExternalServiceError("ledger", f"run {run_id} not found on ledger")
        return state

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------

    async def fetch_run(self, run_id: str) -> Optional[LedgerRunState]:
        self._record("fetch_run", run_id)
        state = self._runs.get(run_id)
        if state is None:
            return None
        return LedgerRunState(**state.to_dict())

    async def create_run(self, run_id: str, min_deposit: float, max_deposit: float, max_participants: int) -> str:
        self._record("create_run", run_id)
        if run_id in self._runs:
            raise ExternalServiceError("ledger", f"run {run_id} already exists on ledger")
        self._runs[run_id] = LedgerRunState(run_id=run_id, status=LEDGER_STATUS_PENDING)
        self._depositors.setdefault(run_id, set())
        self.log.info(f"Paper ledger: run {run_id} created")
        return self._tx()

    async def create_vault(self, run_id: str) -> str:
        self._record("create_vault", run_id)
        state = self._require(run_id)
        if state.vault_created:
            raise ExternalServiceError("ledger", f"vault for run {run_id} already exists")
        state.vault_created = True
        self._vaults.setdefault(run_id, 0.0)
        return self._tx()

    async def start_run(self, run_id: str) -> str:
        self._record("start_run", run_id)
        state = self._require(run_id)
        if state.status != LEDGER_STATUS_PENDING:
            raise ExternalServiceError("ledger", f"run {run_id} is {state.status}, cannot start")
        state.status = LEDGER_STATUS_ACTIVE
        return self._tx()

    async def settle_run(self, run_id: str, final_balance: float, shares: Sequence[Tuple[str, float]]) -> str:
        self._record("settle_run", run_id)
        state = self._require(run_id)
        if state.status != LEDGER_STATUS_ACTIVE:
            raise ExternalServiceError("ledger", f"run {run_id} is {state.status}, cannot settle")
        state.status = LEDGER_STATUS_SETTLED
        state.final_balance = round_usdc(final_balance)
        self.settlements[run_id] = [(str(uid), round_usdc(amount)) for uid, amount in shares]
        return self._tx()

    async def vault_balance(self, run_id: str) -> float:
        self._record("vault_balance", run_id)
        self._require(run_id)
        return round_usdc(self._vaults.get(run_id, 0.0))

    # ------------------------------------------------------------------
    # Vault mirroring
    # ------------------------------------------------------------------

    def record_deposit(self, run_id: str, user_id: str, amount: float) -> None:
        state = self._runs.get(run_id)
        if state is None or state.status != LEDGER_STATUS_PENDING:
            return
        depositors = self._depositors.setdefault(run_id, set())
        if user_id not in depositors:
            depositors.add(user_id)
            state.participant_count = len(depositors)
        state.total_deposited = round_usdc(state.total_deposited + amount)
        self._vaults[run_id] = round_usdc(self._vaults.get(run_id, 0.0) + amount)

    def record_withdrawal(self, run_id: str, user_id: str, amount: float) -> None:
        state = self._runs.get(run_id)
        if state is None or state.status != LEDGER_STATUS_PENDING:
            return
        depositors = self._depositors.setdefault(run_id, set())
        if user_id in depositors:
            depositors.discard(user_id)
            state.participant_count = len(depositors)
            state.total_deposited = round_usdc(max(0.0, state.total_deposited - amount))
            self._vaults[run_id] = round_usdc(max(0.0, self._vaults.get(run_id, 0.0) - amount))

    def adjust_vault(self, run_id: str, delta: float) -> None:
        if run_id not in self._runs:
            return
        self._vaults[run_id] = round_usdc(max(0.0, self._vaults.get(run_id, 0.0) + delta))

    def set_vault_balance(self, run_id: str, amount: float) -> None:
        self._vaults[run_id] = round_usdc(amount)

    def set_status(self, run_id: str, status: str) -> None:
        self._require(run_id).status = status
