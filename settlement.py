#!/usr/bin/env python3
"""
Start sequence and settlement reconciler.

Both phase transitions are gated on the external ledger: the internal
status only changes after the ledger has confirmed the matching
instruction. A failed ledger call leaves the run where it was and
propagates so the scheduler (or an operator) retries later.

Start:   WAITING -> ACTIVE   after ledger start_run (self-heals a missing
                             ledger record / vault first)
Settle:  ACTIVE  -> ENDED    after ledger settle_run with per-participant
                             shares; aborted on any reconciliation mismatch
Cancel:  WAITING -> ENDED    empty lobby, no ledger calls
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, List, Optional

from broadcaster import EVENT_RUN_UPDATE, RunBroadcaster
from ledger import (
    LEDGER_STATUS_ACTIVE,
    LEDGER_STATUS_PENDING,
    LEDGER_STATUS_SETTLED,
    LedgerAdapter,
)
from logging_utils import get_logger
from pool_accounting import (
    DEFAULT_SUM_EPSILON,
    ParticipantShare,
    check_settlement_sum,
    distribute_pnl,
    round_usdc,
)
from run_db import RunDB, RunRecord
from run_errors import (
    ExternalServiceError,
    NotFoundError,
    ReconciliationError,
    StateError,
)
from run_status import (
    LOG_RUN_END,
    LOG_RUN_START,
    RUN_STATUS_ACTIVE,
    RUN_STATUS_ENDED,
    RUN_STATUS_WAITING,
)
from trade_execution import TradeExecutor

DEFAULT_BALANCE_TOLERANCE = 0.01
DEFAULT_EXTERNAL_TIMEOUT_SECONDS = 15.0


class SettlementReconciler:
    def __init__(
        self,
        db: RunDB,
        ledger: LedgerAdapter,
        trades: TradeExecutor,
        broadcaster: RunBroadcaster,
        *,
        balance_tolerance: float = DEFAULT_BALANCE_TOLERANCE,
        sum_epsilon: float = DEFAULT_SUM_EPSILON,
        external_timeout: float = DEFAULT_EXTERNAL_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.ledger = ledger
        self.trades = trades
        self.broadcaster = broadcaster
        self.balance_tolerance = float(balance_tolerance)
        self.sum_epsilon = float(sum_epsilon)
        self.external_timeout = float(external_timeout)
        self.log = get_logger("settlement")

    async def _ledger_call(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.external_timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError("ledger", f"{op} timed out after {self.external_timeout}s", cause=exc) from exc

    async def _require_run(self, run_id: str) -> RunRecord:
        run = await asyncio.to_thread(self.db.get_run, run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def _mirror_deposits(self, run: RunRecord) -> None:
        for p in await asyncio.to_thread(self.db.list_participants, run.id):
            self.ledger.record_deposit(run.id, p.user_id, p.deposit_amount)

    # ------------------------------------------------------------------
    # Start sequence
    # ------------------------------------------------------------------

    async def confirm_start(self, run: RunRecord) -> bool:
        """Start run on the ledger, then flip it ACTIVE internally.

        Returns True when the run is ACTIVE afterwards. An already-ACTIVE run
        is a no-op (no ledger calls).
        """
        current = await self._require_run(run.id)
        if current.status == RUN_STATUS_ACTIVE:
            return True
        if current.status != RUN_STATUS_WAITING:
            raise StateError(f"Run {run.id} is {current.status}; cannot start")

        state = await self._ledger_call("fetch_run", self.ledger.fetch_run(run.id))
        if state is None:
            self.log.warning(f"Run {run.id} missing on ledger; creating run and vault")
            await self._ledger_call(
                "create_run",
                self.ledger.create_run(run.id, current.min_deposit, current.max_deposit, current.max_participants),
            )
            await self._ledger_call("create_vault", self.ledger.create_vault(run.id))
            await self._mirror_deposits(current)
            ledger_status = LEDGER_STATUS_PENDING
        else:
            if not state.vault_created:
                self.log.warning(f"Run {run.id} has no ledger vault; creating it")
                await self._ledger_call("create_vault", self.ledger.create_vault(run.id))
            ledger_status = state.status

        if ledger_status == LEDGER_STATUS_SETTLED:
            raise ReconciliationError(f"Run {run.id} is already SETTLED on the ledger but WAITING internally")
        if ledger_status != LEDGER_STATUS_ACTIVE:
            tx = await self._ledger_call("start_run", self.ledger.start_run(run.id))
            self.log.info(f"Run {run.id} started on ledger (tx {tx})")
        else:
            self.log.info(f"Run {run.id} already ACTIVE on ledger; syncing internal state")

        # Pool is read inside the activating transaction so lobby changes made
        # during the ledger calls are included.
        now = time.time()
        starting_pool = await asyncio.to_thread(self.db.activate_run, run.id, now)
        if starting_pool is None:
            latest = await self._require_run(run.id)
            return latest.status == RUN_STATUS_ACTIVE

        participants = await asyncio.to_thread(self.db.count_participants, run.id)
        await asyncio.to_thread(
            self.db.record_system_log,
            run.id,
            LOG_RUN_START,
            f"Run started with {participants} participants",
            {"starting_pool": starting_pool, "participants": participants},
        )
        self.broadcaster.publish(
            run.id,
            EVENT_RUN_UPDATE,
            {"status": RUN_STATUS_ACTIVE, "starting_pool": starting_pool, "started_at": now},
        )
        return True

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(self, run: RunRecord, reason: str = "no participants") -> bool:
        current = await self._require_run(run.id)
        if current.status == RUN_STATUS_ENDED:
            return False
        if current.status != RUN_STATUS_WAITING:
            raise StateError(f"Run {run.id} is {current.status}; only WAITING runs can be cancelled")
        count = await asyncio.to_thread(self.db.count_participants, run.id)
        if count > 0:
            raise StateError(f"Run {run.id} has {count} participants; cannot cancel")

        changed = await asyncio.to_thread(
            self.db.transition_run,
            run.id,
            RUN_STATUS_WAITING,
            RUN_STATUS_ENDED,
            ended_at=time.time(),
            countdown=0,
        )
        if changed:
            self.log.info(f"Run {run.id} cancelled ({reason})")
            await asyncio.to_thread(
                self.db.record_system_log, run.id, LOG_RUN_END, f"Run cancelled: {reason}", None
            )
            self.broadcaster.publish(run.id, EVENT_RUN_UPDATE, {"status": RUN_STATUS_ENDED, "cancelled": True})
        return changed

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def compute_shares(self, run: RunRecord, participants) -> List[ParticipantShare]:
        total_pnl = round_usdc(run.total_pool - run.starting_pool)
        shares = distribute_pnl(total_pnl, participants)
        check_settlement_sum(shares, run.starting_pool, total_pnl, self.sum_epsilon)
        return shares

    async def settle(self, run: RunRecord) -> bool:
        """Close the final position, reconcile with the ledger, settle, then flip ENDED.

        Returns False when the run had already ended (no-op).
        """
        current = await self._require_run(run.id)
        if current.status == RUN_STATUS_ENDED:
            return False
        if current.status != RUN_STATUS_ACTIVE:
            raise StateError(f"Run {run.id} is {current.status}; cannot settle")

        await self.trades.close_open_trades(current)

        current = await self._require_run(run.id)
        participants = await asyncio.to_thread(self.db.list_participants, run.id)
        total_pnl = round_usdc(current.total_pool - current.starting_pool)
        shares = self.compute_shares(current, participants)
        share_list = [(s.user_id, s.final_share) for s in shares]

        state = await self._ledger_call("fetch_run", self.ledger.fetch_run(run.id))
        if state is None:
            raise ReconciliationError(f"Run {run.id} not found on ledger; settlement aborted")

        if state.status == LEDGER_STATUS_SETTLED:
            # A previous attempt committed remotely but not locally.
            self.log.warning(f"Run {run.id} already SETTLED on ledger; finalizing internal state only")
            return await self._finalize(current, share_list, total_pnl, final_balance=state.final_balance)

        if state.status != LEDGER_STATUS_ACTIVE:
            raise ReconciliationError(
                f"Run {run.id} ledger status is {state.status}, expected {LEDGER_STATUS_ACTIVE}; settlement aborted"
            )
        if state.participant_count != len(participants):
            raise ReconciliationError(
                f"Run {run.id} participant mismatch: ledger={state.participant_count} "
                f"internal={len(participants)}; settlement aborted"
            )

        final_balance = await self._ledger_call("vault_balance", self.ledger.vault_balance(run.id))
        final_balance = round_usdc(final_balance)
        drift = abs(final_balance - current.total_pool)
        if drift > self.balance_tolerance:
            self.log.warning(
                f"Run {run.id} vault balance mismatch: vault={final_balance:.6f} "
                f"pool={current.total_pool:.6f} (diff {drift:.6f}); settling with vault balance"
            )

        tx = await self._ledger_call("settle_run", self.ledger.settle_run(run.id, final_balance, share_list))
        self.log.info(f"Run {run.id} settled on ledger (tx {tx}, final balance {final_balance:.6f})")
        return await self._finalize(current, share_list, total_pnl, final_balance=final_balance)

    async def _finalize(
        self,
        run: RunRecord,
        share_list,
        total_pnl: float,
        *,
        final_balance: Optional[float],
    ) -> bool:
        changed = await asyncio.to_thread(self.db.finalize_settlement, run.id, share_list)
        if not changed:
            return False
        await asyncio.to_thread(
            self.db.record_system_log,
            run.id,
            LOG_RUN_END,
            f"Run ended: pool {run.total_pool:.2f} (pnl {total_pnl:+.2f})",
            {
                "total_pool": run.total_pool,
                "starting_pool": run.starting_pool,
                "total_pnl": total_pnl,
                "final_balance": final_balance,
                "shares": [{"user_id": uid, "final_share": amt} for uid, amt in share_list],
            },
        )
        self.broadcaster.publish(
            run.id,
            EVENT_RUN_UPDATE,
            {"status": RUN_STATUS_ENDED, "total_pool": run.total_pool, "total_pnl": total_pnl},
        )
        return True
