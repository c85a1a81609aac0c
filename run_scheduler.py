#!/usr/bin/env python3
"""
Run lifecycle scheduler.

A fixed-interval tick drives every run through its phases:

    WAITING  countdown; at zero cancel (empty lobby) or start + open round 1
    ACTIVE   on round expiry: close trade N-1, execute trade N, then open
             round N+1 or settle after the final round

Runs are processed concurrently within a tick and strictly sequentially
within a run. Every run is handled under its per-run single-flight lock, so
an overlapping tick skips runs that are still in flight. Phase transitions
are never cancelled part-way: each venue/ledger call carries its own
timeout, and a run that outlives run_timeout is only reported as slow.

An operator end request (force_end) is persisted on the run; from then on
the run is only ever settled, never traded or given a new round.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Set

from broadcaster import EVENT_RUN_UPDATE, RunBroadcaster
from logging_utils import get_logger
from run_db import RunDB, RunRecord
from run_errors import ExternalServiceError, RunError, StateError
from run_locks import RunLockRegistry
from run_service import lobby_remaining
from run_status import (
    ROUND_STATUS_EXECUTING,
    ROUND_STATUS_OPEN,
    RUN_STATUS_ACTIVE,
    RUN_STATUS_ENDED,
    RUN_STATUS_WAITING,
)
from settlement import SettlementReconciler
from trade_execution import TradeExecutor
from voting_rounds import VotingRoundManager, is_round_expired

DEFAULT_TICK_INTERVAL_SECONDS = 5.0
DEFAULT_RUN_TIMEOUT_SECONDS = 60.0


@dataclass
class TickReport:
    processed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "skipped": self.skipped, "errors": self.errors}


class RunScheduler:
    def __init__(
        self,
        db: RunDB,
        rounds: VotingRoundManager,
        trades: TradeExecutor,
        settlement: SettlementReconciler,
        locks: RunLockRegistry,
        broadcaster: RunBroadcaster,
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
        run_timeout: float = DEFAULT_RUN_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.rounds = rounds
        self.trades = trades
        self.settlement = settlement
        self.locks = locks
        self.broadcaster = broadcaster
        self.tick_interval = float(tick_interval)
        self.run_timeout = float(run_timeout)
        self._clock = clock
        self._running = False
        self._inflight: Set[asyncio.Task] = set()
        self._tick_count = 0
        self.log = get_logger("run_scheduler")

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Tick on a fixed cadence until stop(); a slow tick does not delay the next one."""
        self._running = True
        self.log.info(f"Starting run scheduler ({self.tick_interval}s interval)")
        try:
            while self._running:
                task = asyncio.create_task(self.tick())
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                await asyncio.sleep(self.tick_interval)
        finally:
            await self.drain()

    def stop(self) -> None:
        self._running = False
        self.log.info("Run scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def drain(self) -> None:
        """Wait for in-flight ticks to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        self._tick_count += 1
        report = TickReport()

        waiting = await asyncio.to_thread(self.db.list_runs, [RUN_STATUS_WAITING])
        await asyncio.gather(*(self._guarded(run, self._process_waiting, report) for run in waiting))

        active = await asyncio.to_thread(self.db.list_runs, [RUN_STATUS_ACTIVE])
        await asyncio.gather(*(self._guarded(run, self._process_active, report) for run in active))

        if report.processed or report.errors:
            self.log.debug(f"Tick {self._tick_count}: {report.to_dict()}")
        return report

    async def _run_to_completion(self, run: RunRecord, handler: Callable[[RunRecord], Awaitable[None]]) -> None:
        task = asyncio.ensure_future(handler(run))
        done, _ = await asyncio.wait({task}, timeout=self.run_timeout)
        if not done:
            self.log.warning(
                f"Run {run.id} still processing after {self.run_timeout}s; letting the transition finish"
            )
            await asyncio.wait({task})
        task.result()

    async def _guarded(
        self,
        run: RunRecord,
        handler: Callable[[RunRecord], Awaitable[None]],
        report: TickReport,
    ) -> None:
        async with self.locks.try_hold(run.id) as acquired:
            if not acquired:
                report.skipped += 1
                self.log.debug(f"Run {run.id} still in flight; skipping this tick")
                return
            try:
                await self._run_to_completion(run, handler)
                report.processed += 1
            except ExternalServiceError as exc:
                report.errors += 1
                self.log.error(f"Run {run.id}: {exc}; retrying next tick")
            except RunError as exc:
                report.errors += 1
                self.log.error(f"Run {run.id}: {type(exc).__name__}: {exc}")
            except Exception:
                report.errors += 1
                self.log.exception(f"Run {run.id}: unexpected error during tick")
        await self._retire_if_ended(run.id)

    async def _retire_if_ended(self, run_id: str) -> None:
        latest = await asyncio.to_thread(self.db.get_run, run_id)
        if latest is None or latest.status == RUN_STATUS_ENDED:
            self.locks.retire(run_id)

    # ------------------------------------------------------------------
    # WAITING
    # ------------------------------------------------------------------

    async def _process_waiting(self, run: RunRecord) -> None:
        current = await asyncio.to_thread(self.db.get_run, run.id)
        if current is None or current.status != RUN_STATUS_WAITING:
            return
        remaining = lobby_remaining(current, self._clock())
        await asyncio.to_thread(self.db.update_countdown, run.id, remaining)
        self.broadcaster.publish(run.id, EVENT_RUN_UPDATE, {"status": RUN_STATUS_WAITING, "countdown": remaining})
        if remaining > 0:
            return

        participants = await asyncio.to_thread(self.db.count_participants, run.id)
        if participants == 0:
            await self.settlement.cancel(current)
            return
        await self._start_run(current)

    async def _start_run(self, run: RunRecord) -> None:
        if not await self.settlement.confirm_start(run):
            return
        started = await asyncio.to_thread(self.db.get_run, run.id)
        if started is None:
            return
        await self.rounds.create_round(started, 1)

    # ------------------------------------------------------------------
    # ACTIVE
    # ------------------------------------------------------------------

    async def _process_active(self, run: RunRecord) -> None:
        current = await asyncio.to_thread(self.db.get_run, run.id)
        if current is None or current.status != RUN_STATUS_ACTIVE:
            return

        if current.end_requested_at is not None:
            self.log.info(f"Run {run.id}: end requested by operator; retrying settlement")
            await self.settlement.settle(current)
            return

        open_round = await asyncio.to_thread(self.db.get_open_round, run.id)
        if open_round is None:
            await self._recover_or_end(current)
            return

        if is_round_expired(open_round, current.voting_interval, self._clock()):
            await self.handle_round_expiry(current, open_round.round)
        else:
            await self.rounds.refresh_time_remaining(current, open_round)

    async def handle_round_expiry(self, run: RunRecord, round_no: int) -> None:
        """Close trade N-1, execute trade N, then open N+1 or settle."""
        if round_no > 1:
            await self.trades.close_round_trade(run, round_no - 1)
        await self.trades.execute_round_trade(run, round_no)

        if round_no >= run.total_rounds:
            await self.settlement.settle(run)
            return
        latest = await asyncio.to_thread(self.db.get_run, run.id)
        await self.rounds.create_round(latest or run, round_no + 1)

    async def _recover_or_end(self, run: RunRecord) -> None:
        latest_no = await asyncio.to_thread(self.db.get_max_round, run.id)
        if latest_no > 0:
            latest = await asyncio.to_thread(self.db.get_round, run.id, latest_no)
            if latest is not None and latest.status == ROUND_STATUS_EXECUTING:
                # Expiry handler interrupted between closing the round and recording its trade.
                if await asyncio.to_thread(self.db.get_trade, run.id, latest_no) is None:
                    self.log.warning(f"Run {run.id}: round {latest_no} closed without a trade; executing now")
                    await self.trades.execute_round_trade(run, latest_no)
                for trade in await asyncio.to_thread(self.db.get_open_trades, run.id):
                    if trade.round < latest_no:
                        await self.trades.close_round_trade(run, trade.round)

        completed = await asyncio.to_thread(self.db.count_rounds, run.id, ROUND_STATUS_EXECUTING)
        if completed >= run.total_rounds:
            await self.settlement.settle(run)
            return

        next_round = latest_no + 1
        if latest_no > 0:
            self.log.warning(f"Run {run.id}: ACTIVE without an open round; opening round {next_round}")
        fresh = await asyncio.to_thread(self.db.get_run, run.id)
        await self.rounds.create_round(fresh or run, next_round)

    # ------------------------------------------------------------------
    # Admin overrides
    # ------------------------------------------------------------------

    async def force_start(self, run_id: str) -> bool:
        """Skip the rest of the lobby and start run_id now."""
        async with self.locks.hold(run_id):
            run = await asyncio.to_thread(self.db.get_run, run_id)
            if run is None:
                raise StateError(f"Run {run_id} not found")
            if run.status == RUN_STATUS_ACTIVE:
                return False
            if run.status != RUN_STATUS_WAITING:
                raise StateError(f"Run {run_id} is {run.status}; cannot start")
            if await asyncio.to_thread(self.db.count_participants, run_id) == 0:
                raise StateError(f"Run {run_id} has no participants")
            self.log.info(f"Force-starting run {run_id}")
            await self._start_run(run)
            return True

    async def force_end(self, run_id: str) -> bool:
        """End run_id now: cancel an empty lobby or settle an active run."""
        async with self.locks.hold(run_id):
            run = await asyncio.to_thread(self.db.get_run, run_id)
            if run is None:
                raise StateError(f"Run {run_id} not found")
            if run.status == RUN_STATUS_ENDED:
                return False
            if run.status == RUN_STATUS_WAITING:
                ended = await self.settlement.cancel(run, reason="forced by operator")
                if ended:
                    self.locks.retire(run_id)
                return ended

            # Persist the request first: if settlement fails, later ticks only
            # retry settlement.
            await asyncio.to_thread(self.db.request_end, run_id)
            open_round = await asyncio.to_thread(self.db.get_open_round, run_id)
            if open_round is not None and open_round.status == ROUND_STATUS_OPEN:
                # Freeze votes; the round's trade is never opened.
                await self.rounds.close_round(run_id, open_round.round)
            self.log.info(f"Force-ending run {run_id}")
            ended = await self.settlement.settle(run)
        if ended:
            self.locks.retire(run_id)
        return ended

    def status(self) -> Dict[str, object]:
        return {
            "running": self._running,
            "tick_count": self._tick_count,
            "inflight_ticks": len(self._inflight),
            "tick_interval": self.tick_interval,
        }
