#!/usr/bin/env python3
"""Trade execution: open/close per round, exit-price fallbacks, pool updates."""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from broadcaster import RunBroadcaster
from chaos_modifiers import ChaosModifiers
from exchanges import PaperVenueAdapter
from ledger import PaperLedger
from run_db import RunDB
from trade_execution import (
    EXIT_SOURCE_ENTRY,
    EXIT_SOURCE_MARKET,
    EXIT_SOURCE_SKIP,
    EXIT_SOURCE_VENUE,
    EXIT_SOURCE_VENUE_EXIT,
    TradeExecutor,
    client_ref_for,
)
from voting_rounds import VotingRoundManager


class _Harness:
    def __init__(self, chaos=ChaosModifiers(leverage=5.0, position_size_percent=50.0)):
        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            db_path = f.name
        self.db = RunDB(db_path)
        self.venue = PaperVenueAdapter(logging.getLogger("test.venue"), start_price=150.0)
        self.broadcaster = RunBroadcaster()
        self.rounds = VotingRoundManager(self.db, self.venue, self.broadcaster, external_timeout=1.0)
        self.trades = TradeExecutor(
            self.db,
            self.venue,
            self.rounds,
            self.broadcaster,
            external_timeout=1.0,
            chaos_source=lambda: chaos,
        )
        run = self.db.create_run(
            market_symbol="SOL-PERP",
            lobby_duration=0,
            voting_interval=300,
            total_rounds=3,
            min_deposit=5.0,
            max_deposit=100.0,
            max_participants=10,
        )
        self.db.add_participant(run.id, "alice", 10.0)
        self.db.add_participant(run.id, "bob", 20.0)
        self.db.transition_run(run.id, "WAITING", "ACTIVE", starting_pool=30.0)
        self.run = self.db.get_run(run.id)

    async def open_voted_round(self, round_no, votes):
        await self.rounds.create_round(self.run, round_no)
        for user, choice in votes.items():
            await self.rounds.cast_vote(self.run.id, user, round_no, choice)
        return await self.trades.execute_round_trade(self.run, round_no)

    def pool(self):
        return self.db.get_run(self.run.id).total_pool


def test_long_round_opens_and_closes_on_venue() -> None:
    h = _Harness()

    async def _run():
        trade = await h.open_voted_round(1, {"alice": "LONG", "bob": "LONG"})
        h.venue.set_price("SOL-PERP", 153.0)
        closed = await h.trades.close_round_trade(h.run, 1)
        return trade, closed

    trade, closed = asyncio.run(_run())
    assert trade.direction == "LONG"
    assert trade.notional == pytest.approx(15.0)
    assert trade.entry_price == 150.0
    assert trade.tx_id and trade.tx_id.startswith("paper-")
    opens = [c for c in h.venue.calls if c["op"] == "open"]
    assert opens[0]["client_ref"] == client_ref_for(h.run.id, 1)
    assert opens[0]["leverage"] == 5.0

    assert closed.exit_price == 153.0
    assert closed.pnl == pytest.approx(1.5)
    assert closed.pnl_percentage == pytest.approx(5.0)
    assert closed.exit_source == EXIT_SOURCE_VENUE
    assert h.pool() == pytest.approx(31.5)
    # execution sample overwrites the display sample
    rnd = h.db.get_round(h.run.id, 1)
    assert (rnd.leverage, rnd.position_size_percent) == (5.0, 50.0)
    assert {p.user_id: p.votes_correct for p in h.db.list_participants(h.run.id)} == {"alice": 1, "bob": 1}


def test_realized_pnl_moves_ledger_vault_with_pool() -> None:
    h = _Harness()
    ledger = PaperLedger(logging.getLogger("test.ledger"))
    h.trades.ledger = ledger

    async def _run():
        await ledger.create_run(h.run.id, 5.0, 100.0, 10)
        await ledger.create_vault(h.run.id)
        ledger.record_deposit(h.run.id, "alice", 10.0)
        ledger.record_deposit(h.run.id, "bob", 20.0)
        await ledger.start_run(h.run.id)
        await h.open_voted_round(1, {"alice": "LONG"})
        h.venue.set_price("SOL-PERP", 153.0)
        await h.trades.close_round_trade(h.run, 1)
        return await ledger.vault_balance(h.run.id)

    vault = asyncio.run(_run())
    assert h.pool() == pytest.approx(31.5)
    assert vault == pytest.approx(h.pool())


def test_execute_is_idempotent() -> None:
    h = _Harness()

    async def _run():
        first = await h.open_voted_round(1, {"alice": "SHORT"})
        second = await h.trades.execute_round_trade(h.run, 1)
        return first, second

    first, second = asyncio.run(_run())
    assert first.direction == second.direction == "SHORT"
    assert len([c for c in h.venue.calls if c["op"] == "open"]) == 1
    assert len(h.db.list_trades(h.run.id)) == 1


def test_skip_round_makes_no_venue_call_and_zero_pnl() -> None:
    h = _Harness()

    async def _run():
        trade = await h.open_voted_round(1, {"alice": "LONG", "bob": "SHORT"})
        closed = await h.trades.close_round_trade(h.run, 1)
        return trade, closed

    trade, closed = asyncio.run(_run())
    assert trade.direction == "SKIP"
    assert trade.notional == 0.0
    assert not [c for c in h.venue.calls if c["op"] in ("open", "close")]
    assert closed.pnl == 0.0 and closed.exit_price == trade.entry_price
    assert closed.exit_source == EXIT_SOURCE_SKIP
    assert h.pool() == pytest.approx(30.0)


def test_failed_open_is_recorded_as_skip() -> None:
    h = _Harness()
    h.venue.fail_open = True
    trade = asyncio.run(h.open_voted_round(1, {"alice": "LONG", "bob": "LONG"}))
    assert trade.direction == "SKIP"
    assert trade.open_error
    assert trade.notional == 0.0
    assert h.pool() == pytest.approx(30.0)


def test_close_without_venue_pnl_uses_reported_exit() -> None:
    h = _Harness()
    h.venue.close_without_pnl = True

    async def _run():
        await h.open_voted_round(1, {"alice": "LONG"})
        h.venue.set_price("SOL-PERP", 147.0)
        return await h.trades.close_round_trade(h.run, 1)

    closed = asyncio.run(_run())
    assert closed.exit_source == EXIT_SOURCE_VENUE_EXIT
    assert closed.exit_price == 147.0
    assert closed.pnl == pytest.approx(-1.5)
    assert h.pool() == pytest.approx(28.5)


def test_failed_close_falls_back_to_market_price() -> None:
    h = _Harness()

    async def _run():
        await h.open_voted_round(1, {"alice": "SHORT"})
        h.venue.fail_close = True
        h.venue.set_price("SOL-PERP", 147.0)
        return await h.trades.close_round_trade(h.run, 1)

    closed = asyncio.run(_run())
    assert closed.exit_source == EXIT_SOURCE_MARKET
    assert closed.exit_price == 147.0
    assert closed.pnl == pytest.approx(1.5)


def test_failed_close_without_price_closes_at_entry() -> None:
    h = _Harness()

    async def _run():
        await h.open_voted_round(1, {"alice": "LONG"})
        h.venue.fail_close = True
        h.venue.fail_price = True
        return await h.trades.close_round_trade(h.run, 1)

    closed = asyncio.run(_run())
    assert closed.exit_source == EXIT_SOURCE_ENTRY
    assert closed.exit_price == closed.entry_price
    assert closed.pnl == 0.0
    assert h.pool() == pytest.approx(30.0)


def test_close_is_applied_once() -> None:
    h = _Harness()

    async def _run():
        await h.open_voted_round(1, {"alice": "LONG"})
        h.venue.set_price("SOL-PERP", 153.0)
        await h.trades.close_round_trade(h.run, 1)
        h.venue.set_price("SOL-PERP", 200.0)
        return await h.trades.close_round_trade(h.run, 1)

    again = asyncio.run(_run())
    assert again.exit_price == 153.0
    assert h.pool() == pytest.approx(31.5)


def test_wipeout_clamps_pool_and_next_round_skips() -> None:
    h = _Harness(chaos=ChaosModifiers(leverage=20.0, position_size_percent=100.0))

    async def _run():
        await h.open_voted_round(1, {"alice": "SHORT"})
        h.venue.set_price("SOL-PERP", 300.0)
        closed = await h.trades.close_round_trade(h.run, 1)
        second = await h.open_voted_round(2, {"alice": "LONG"})
        return closed, second

    closed, second = asyncio.run(_run())
    assert closed.pnl == pytest.approx(-600.0)
    assert h.pool() == 0.0
    assert second.direction == "SKIP"
    assert second.notional == 0.0


def test_close_open_trades_closes_everything() -> None:
    h = _Harness()

    async def _run():
        await h.open_voted_round(1, {"alice": "LONG"})
        count = await h.trades.close_open_trades(h.run)
        return count

    assert asyncio.run(_run()) == 1
    assert h.db.get_open_trades(h.run.id) == []
