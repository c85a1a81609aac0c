#!/usr/bin/env python3
"""
Round trade execution.

Opening (round N expires):
  1. close the round (tally, freeze distribution)
  2. draw the execution chaos sample (authoritative, overwrites the round)
  3. notional = current pool * position_size_percent
  4. venue open; any failure records the trade as SKIP with zero PnL

Closing (round N+1 expires, or the run ends):
  SKIP trades close at their entry price with zero PnL. Real trades close on
  the venue; when that fails the exit price falls back to the venue's
  reported exit, then the market price, then the entry price. Each fallback
  is logged as degraded. Realized PnL moves the pool through the accounting
  engine; the caller holds the run lock.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from broadcaster import EVENT_TRADE_UPDATE, RunBroadcaster
from chaos_modifiers import (
    ChaosModifiers,
    calculate_position_size,
    generate_chaos_modifiers,
    validate_chaos_modifiers,
)
from exchanges import CloseResult, OpenResult, VenueAdapter
from ledger import LedgerAdapter
from logging_utils import get_logger
from pool_accounting import (
    apply_realized_pnl,
    calculate_trade_pnl,
    pnl_percentage,
    round_usdc,
)
from run_db import RunDB, RunRecord, TradeRecord
from run_errors import ExternalServiceError, NotFoundError
from run_status import DIRECTION_SKIP, LOG_TRADE_EXECUTED
from voting_rounds import VotingRoundManager

# trades.exit_source values
EXIT_SOURCE_SKIP = "skip"
EXIT_SOURCE_VENUE = "venue"
EXIT_SOURCE_VENUE_EXIT = "venue_exit"
EXIT_SOURCE_MARKET = "market"
EXIT_SOURCE_ENTRY = "entry"

DEFAULT_EXTERNAL_TIMEOUT_SECONDS = 15.0


def client_ref_for(run_id: str, round_no: int) -> str:
    return f"{run_id}:{int(round_no)}"


class TradeExecutor:
    def __init__(
        self,
        db: RunDB,
        venue: VenueAdapter,
        rounds: VotingRoundManager,
        broadcaster: RunBroadcaster,
        *,
        ledger: Optional[LedgerAdapter] = None,
        external_timeout: float = DEFAULT_EXTERNAL_TIMEOUT_SECONDS,
        chaos_source: Optional[Callable[[], ChaosModifiers]] = None,
    ):
        self.db = db
        self.venue = venue
        self.rounds = rounds
        self.broadcaster = broadcaster
        self.ledger = ledger
        self.external_timeout = float(external_timeout)
        self._chaos_source = chaos_source or generate_chaos_modifiers
        self.log = get_logger("trade_execution")

    async def _venue_open(self, run: RunRecord, round_no: int, direction: str, notional: float, leverage: float) -> OpenResult:
        try:
            return await asyncio.wait_for(
                self.venue.open(
                    run.market_symbol,
                    direction,
                    notional,
                    leverage,
                    client_ref=client_ref_for(run.id, round_no),
                ),
                timeout=self.external_timeout,
            )
        except asyncio.TimeoutError:
            return OpenResult(success=False, error=f"open timed out after {self.external_timeout}s")
        except Exception as exc:
            return OpenResult(success=False, error=f"open raised {type(exc).__name__}: {exc}")

    async def _venue_close(self, run: RunRecord, round_no: int) -> CloseResult:
        try:
            return await asyncio.wait_for(
                self.venue.close(run.market_symbol, client_ref=client_ref_for(run.id, round_no)),
                timeout=self.external_timeout,
            )
        except asyncio.TimeoutError:
            return CloseResult(success=False, error=f"close timed out after {self.external_timeout}s")
        except Exception as exc:
            return CloseResult(success=False, error=f"close raised {type(exc).__name__}: {exc}")

    async def execute_round_trade(self, run: RunRecord, round_no: int) -> TradeRecord:
        existing = await asyncio.to_thread(self.db.get_trade, run.id, round_no)
        if existing is not None:
            return existing

        outcome = await self.rounds.close_round(run.id, round_no)
        direction = str(outcome["direction"])

        chaos = self._chaos_source()
        validate_chaos_modifiers(chaos)
        await asyncio.to_thread(
            self.db.record_round_execution,
            run.id,
            round_no,
            leverage=chaos.leverage,
            position_size_percent=chaos.position_size_percent,
        )

        current = await asyncio.to_thread(self.db.get_run, run.id)
        round_rec = await asyncio.to_thread(self.db.get_round, run.id, round_no)
        if current is None or round_rec is None:
            raise NotFoundError(f"Run {run.id} round {round_no} disappeared during execution")
        notional = round_usdc(calculate_position_size(current.total_pool, chaos.position_size_percent))

        entry_price = round_rec.current_price
        tx_id: Optional[str] = None
        open_error: Optional[str] = None

        if direction != DIRECTION_SKIP and notional > 0:
            result = await self._venue_open(run, round_no, direction, notional, chaos.leverage)
            if result.success:
                tx_id = result.tx_id
                if result.entry_price and result.entry_price > 0:
                    entry_price = float(result.entry_price)
                else:
                    self.log.warning(
                        f"Run {run.id} round {round_no}: venue reported no entry price; "
                        f"using round reference {entry_price} (degraded)"
                    )
            else:
                open_error = result.error or "open failed"
                self.log.warning(
                    f"Run {run.id} round {round_no}: open {direction} failed ({open_error}); "
                    f"recording SKIP (degraded)"
                )
                direction = DIRECTION_SKIP
        elif direction != DIRECTION_SKIP:
            self.log.warning(f"Run {run.id} round {round_no}: pool is empty; recording SKIP")
            direction = DIRECTION_SKIP

        trade, created = await asyncio.to_thread(
            self.db.insert_trade,
            run.id,
            round_no,
            direction=direction,
            leverage=chaos.leverage,
            position_size_percent=chaos.position_size_percent,
            notional=notional if direction != DIRECTION_SKIP else 0.0,
            entry_price=entry_price,
            tx_id=tx_id,
            open_error=open_error,
        )
        if not created:
            return trade

        self.log.info(
            f"Run {run.id} round {round_no}: {direction} {chaos.leverage}x "
            f"notional={trade.notional:.2f} entry={entry_price}"
        )
        await asyncio.to_thread(
            self.db.record_system_log,
            run.id,
            LOG_TRADE_EXECUTED,
            f"Round {round_no} trade {direction}",
            {
                "round": round_no,
                "direction": direction,
                "leverage": chaos.leverage,
                "position_size_percent": chaos.position_size_percent,
                "notional": trade.notional,
                "entry_price": entry_price,
                "tx_id": tx_id,
                "error": open_error,
            },
        )
        self.broadcaster.publish(run.id, EVENT_TRADE_UPDATE, {"action": "open", **trade.to_dict()})
        return trade

    async def _resolve_exit(self, run: RunRecord, trade: TradeRecord):
        """Return (exit_price, pnl, exit_source) for an open non-SKIP trade."""
        result = await self._venue_close(run, trade.round)
        if result.success and result.pnl is not None:
            exit_price = result.exit_price
            if not exit_price:
                exit_price = trade.entry_price
                self.log.warning(
                    f"Run {run.id} round {trade.round}: venue reported pnl without exit price (degraded)"
                )
            return float(exit_price), float(result.pnl), EXIT_SOURCE_VENUE

        if not result.success:
            self.log.warning(
                f"Run {run.id} round {trade.round}: venue close failed ({result.error or 'unknown'}); "
                f"falling back (degraded)"
            )

        if result.exit_price and result.exit_price > 0:
            exit_price = float(result.exit_price)
            source = EXIT_SOURCE_VENUE_EXIT
        else:
            try:
                exit_price = await self.rounds.fetch_price(run.market_symbol)
                source = EXIT_SOURCE_MARKET
                self.log.warning(
                    f"Run {run.id} round {trade.round}: using market price {exit_price} as exit (degraded)"
                )
            except ExternalServiceError as exc:
                self.log.warning(
                    f"Run {run.id} round {trade.round}: market price unavailable ({exc}); "
                    f"closing at entry {trade.entry_price} with zero PnL (degraded)"
                )
                return trade.entry_price, 0.0, EXIT_SOURCE_ENTRY

        pnl = calculate_trade_pnl(trade.direction, trade.entry_price, exit_price, trade.notional, trade.leverage)
        return exit_price, pnl, source

    async def close_round_trade(self, run: RunRecord, round_no: int) -> Optional[TradeRecord]:
        trade = await asyncio.to_thread(self.db.get_trade, run.id, round_no)
        if trade is None or not trade.is_open:
            return trade

        if trade.direction == DIRECTION_SKIP:
            exit_price, pnl, source = trade.entry_price, 0.0, EXIT_SOURCE_SKIP
        else:
            exit_price, pnl, source = await self._resolve_exit(run, trade)
        pnl = round_usdc(pnl)

        current = await asyncio.to_thread(self.db.get_run, run.id)
        if current is None:
            raise NotFoundError(f"Run {run.id} not found")
        pool_before = current.total_pool
        pool_after = apply_realized_pnl(pool_before, pnl, context=f"run {run.id} round {round_no}")

        closed = await asyncio.to_thread(
            self.db.close_trade,
            run.id,
            round_no,
            exit_price=exit_price,
            pnl=pnl,
            pnl_percentage=pnl_percentage(pnl, pool_before),
            exit_source=source,
            pool_after=pool_after,
        )
        trade = await asyncio.to_thread(self.db.get_trade, run.id, round_no)
        if not closed:
            return trade

        if self.ledger is not None and pool_after != pool_before:
            self.ledger.adjust_vault(run.id, round_usdc(pool_after - pool_before))

        if trade.direction != DIRECTION_SKIP:
            await self.rounds.score_round_votes(run.id, round_no, trade.entry_price, float(exit_price))

        self.log.info(
            f"Run {run.id} round {round_no}: closed {trade.direction} exit={exit_price} "
            f"pnl={pnl:+.6f} pool {pool_before:.6f} -> {pool_after:.6f} ({source})"
        )
        await asyncio.to_thread(
            self.db.record_system_log,
            run.id,
            LOG_TRADE_EXECUTED,
            f"Round {round_no} trade closed",
            {
                "round": round_no,
                "direction": trade.direction,
                "exit_price": exit_price,
                "pnl": pnl,
                "exit_source": source,
                "pool_after": pool_after,
            },
        )
        self.broadcaster.publish(
            run.id,
            EVENT_TRADE_UPDATE,
            {"action": "close", "total_pool": pool_after, **trade.to_dict()},
        )
        return trade

    async def close_open_trades(self, run: RunRecord) -> int:
        """Close every still-open trade of run (settlement path)."""
        open_trades = await asyncio.to_thread(self.db.get_open_trades, run.id)
        for trade in open_trades:
            await self.close_round_trade(run, trade.round)
        return len(open_trades)
