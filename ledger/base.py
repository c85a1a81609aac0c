#!/usr/bin/env python3
"""
Ledger adapter interface.

The external ledger (settlement contract) is the authority on deposits and
payouts. Each run has a ledger-side record with its own status:

    PENDING  -> created, deposits accepted
    ACTIVE   -> trading started, deposits closed
    SETTLED  -> final balance and shares committed; withdrawals open

Every method raises ExternalServiceError when the ledger cannot be reached
or rejects the instruction.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

LEDGER_STATUS_PENDING = "PENDING"
LEDGER_STATUS_ACTIVE = "ACTIVE"
LEDGER_STATUS_SETTLED = "SETTLED"
VALID_LEDGER_STATUSES = {LEDGER_STATUS_PENDING, LEDGER_STATUS_ACTIVE, LEDGER_STATUS_SETTLED}


@dataclass
class LedgerRunState:
    """Ledger-side view of a run."""
    run_id: str
    status: str
    participant_count: int = 0
    total_deposited: float = 0.0
    final_balance: Optional[float] = None
    vault_created: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerRunState":
        status = str(data.get("status") or LEDGER_STATUS_PENDING).upper()
        final_balance = data.get("final_balance")
        return cls(
            run_id=str(data.get("run_id", "")),
            status=status,
            participant_count=int(data.get("participant_count", 0) or 0),
            total_deposited=float(data.get("total_deposited", 0.0) or 0.0),
            final_balance=float(final_balance) if final_balance is not None else None,
            vault_created=bool(data.get("vault_created", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class LedgerAdapter(abc.ABC):
    """Base class for ledger adapters."""

    def __init__(self, log):
        self.log = log

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def initialize(self) -> bool:
        return True

    @abc.abstractmethod
    async def fetch_run(self, run_id: str) -> Optional[LedgerRunState]:
        """Return the ledger record for run_id, or None if it was never created."""
        raise NotImplementedError

    @abc.abstractmethod
    async def create_run(
        self,
        run_id: str,
        min_deposit: float,
        max_deposit: float,
        max_participants: int,
    ) -> str:
        """Create the ledger record. Returns a transaction reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def create_vault(self, run_id: str) -> str:
        """Create the run's token vault. Returns a transaction reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def start_run(self, run_id: str) -> str:
        """PENDING -> ACTIVE. Returns a transaction reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def settle_run(
        self,
        run_id: str,
        final_balance: float,
        shares: Sequence[Tuple[str, float]],
    ) -> str:
        """ACTIVE -> SETTLED with per-participant payouts. Returns a transaction reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def vault_balance(self, run_id: str) -> float:
        """Current token balance held in the run's vault."""
        raise NotImplementedError

    async def run_exists(self, run_id: str) -> bool:
        return (await self.fetch_run(run_id)) is not None

    async def status(self, run_id: str) -> Optional[str]:
        state = await self.fetch_run(run_id)
        return state.status if state else None

    async def participant_count(self, run_id: str) -> int:
        state = await self.fetch_run(run_id)
        return state.participant_count if state else 0

    # Vault mirroring hooks. A real ledger observes deposits and PnL on its
    # own; in-process ledgers override these to keep their vault in step.

    def record_deposit(self, run_id: str, user_id: str, amount: float) -> None:
        return None

    def record_withdrawal(self, run_id: str, user_id: str, amount: float) -> None:
        return None

    def adjust_vault(self, run_id: str, delta: float) -> None:
        return None

    async def close_adapter(self) -> None:
        return None
