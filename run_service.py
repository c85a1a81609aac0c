#!/usr/bin/env python3
"""
Run service: run creation, lobby membership and read-side queries.

Lobby rules:
- joins and leaves only while the run is WAITING
- deposit within [min_deposit, max_deposit]
- at most max_participants, one participation per user
- the pool grows by the deposit on join and shrinks by it on leave
- membership changes hold the run lock, so they never interleave with the
  start sequence
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from broadcaster import EVENT_RUN_UPDATE, RunBroadcaster
from config_env import RunDefaults
from ledger import LedgerAdapter
from logging_utils import get_logger
from pool_accounting import round_usdc
from run_db import ParticipantRecord, RunDB, RunRecord
from run_errors import ExternalServiceError, NotFoundError, ValidationError
from run_locks import RunLockRegistry
from run_status import (
    LOG_SYSTEM,
    LOG_USER_JOIN,
    LOG_USER_LEAVE,
    RUN_STATUS_WAITING,
)


def lobby_remaining(run: RunRecord, now: Optional[float] = None) -> int:
    """Seconds left in the lobby countdown (never negative)."""
    ts = time.time() if now is None else float(now)
    return max(0, int(math.ceil(run.created_at + run.lobby_duration - ts)))


class RunService:
    def __init__(
        self,
        db: RunDB,
        ledger: LedgerAdapter,
        broadcaster: RunBroadcaster,
        defaults: Optional[RunDefaults] = None,
        locks: Optional[RunLockRegistry] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.defaults = defaults or RunDefaults()
        self.locks = locks or RunLockRegistry(db)
        self.log = get_logger("run_service")

    async def create_run(self, **overrides: Any) -> RunRecord:
        """Create a WAITING run from the configured defaults.

        The ledger record and vault are created right away; if the ledger is
        unreachable the start sequence creates them later.
        """
        params = replace(self.defaults, **overrides)
        params.validate()

        run = await asyncio.to_thread(
            self.db.create_run,
            market_symbol=params.market_symbol,
            lobby_duration=params.lobby_duration,
            voting_interval=params.voting_interval,
            total_rounds=params.total_rounds,
            min_deposit=params.min_deposit,
            max_deposit=params.max_deposit,
            max_participants=params.max_participants,
        )

        try:
            await self.ledger.create_run(run.id, run.min_deposit, run.max_deposit, run.max_participants)
            await self.ledger.create_vault(run.id)
        except ExternalServiceError as exc:
            self.log.warning(f"Ledger setup deferred for run {run.id}: {exc}")

        await asyncio.to_thread(
            self.db.record_system_log,
            run.id,
            LOG_SYSTEM,
            f"Run created: {run.total_rounds} rounds on {run.market_symbol}",
            {"lobby_duration": run.lobby_duration, "voting_interval": run.voting_interval},
        )
        self.broadcaster.publish(run.id, EVENT_RUN_UPDATE, {"status": run.status, "countdown": run.countdown})
        return run

    async def get_run(self, run_id: str) -> RunRecord:
        run = await asyncio.to_thread(self.db.get_run, run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def list_runs(self, statuses: Optional[List[str]] = None) -> List[RunRecord]:
        return await asyncio.to_thread(self.db.list_runs, statuses)

    async def get_countdown(self, run_id: str) -> Optional[int]:
        run = await self.get_run(run_id)
        if run.status != RUN_STATUS_WAITING:
            return None
        return lobby_remaining(run)

    async def join_run(self, run_id: str, user_id: str, deposit_amount: Any) -> ParticipantRecord:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        try:
            deposit = float(deposit_amount)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid deposit amount: {deposit_amount!r}") from exc
        if not math.isfinite(deposit):
            raise ValidationError(f"Invalid deposit amount: {deposit_amount!r}")
        deposit = round_usdc(deposit)

        run = await self.get_run(run_id)
        if deposit < run.min_deposit or deposit > run.max_deposit:
            raise ValidationError(
                f"Deposit must be between {run.min_deposit} and {run.max_deposit} USDC"
            )

        async with self.locks.hold(run_id):
            participant = await asyncio.to_thread(self.db.add_participant, run_id, str(user_id), deposit)
            self.ledger.record_deposit(run_id, str(user_id), deposit)

        await asyncio.to_thread(
            self.db.record_system_log,
            run_id,
            LOG_USER_JOIN,
            f"{user_id} joined with {deposit:.2f} USDC",
            {"user_id": str(user_id), "deposit": deposit},
        )
        updated = await self.get_run(run_id)
        self.broadcaster.publish(
            run_id,
            EVENT_RUN_UPDATE,
            {
                "status": updated.status,
                "total_pool": updated.total_pool,
                "participant_count": await asyncio.to_thread(self.db.count_participants, run_id),
            },
        )
        self.log.info(f"Run {run_id}: {user_id} joined ({deposit:.2f} USDC, pool {updated.total_pool:.2f})")
        return participant

    async def leave_run(self, run_id: str, user_id: str) -> float:
        async with self.locks.hold(run_id):
            refunded = await asyncio.to_thread(self.db.remove_participant, run_id, str(user_id))
            self.ledger.record_withdrawal(run_id, str(user_id), refunded)

        await asyncio.to_thread(
            self.db.record_system_log,
            run_id,
            LOG_USER_LEAVE,
            f"{user_id} left the lobby",
            {"user_id": str(user_id), "refund": refunded},
        )
        updated = await self.get_run(run_id)
        self.broadcaster.publish(
            run_id,
            EVENT_RUN_UPDATE,
            {"status": updated.status, "total_pool": updated.total_pool},
        )
        return refunded

    async def run_summary(self, run_id: str) -> Dict[str, Any]:
        run = await self.get_run(run_id)
        participants = await asyncio.to_thread(self.db.list_participants, run_id)
        rounds = await asyncio.to_thread(self.db.list_rounds, run_id)
        trades = await asyncio.to_thread(self.db.list_trades, run_id)
        summary = run.to_dict()
        summary["countdown"] = lobby_remaining(run) if run.status == RUN_STATUS_WAITING else None
        summary["participant_count"] = len(participants)
        summary["participants"] = [p.to_dict() for p in participants]
        summary["rounds"] = [r.to_dict() for r in rounds]
        summary["trades"] = [t.to_dict() for t in trades]
        summary["total_pnl"] = round_usdc(sum(t.pnl for t in trades if not t.is_open))
        return summary
