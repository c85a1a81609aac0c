#!/usr/bin/env python3
"""Full run: lobby, three voting rounds, lagged trades, ledger settlement."""

import asyncio
import logging
import sys
import tempfile
import time
from copy import deepcopy
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from broadcaster import EVENT_ROUND_UPDATE, EVENT_RUN_UPDATE, EVENT_TRADE_UPDATE, EVENT_VOTE_UPDATE
from chaos_modifiers import ChaosModifiers
from config_env import DEFAULT_CONFIG
from exchanges import PaperVenueAdapter
from ledger import LEDGER_STATUS_SETTLED, PaperLedger
from main import build_app
from pool_accounting import ParticipantShare, check_settlement_sum
from run_db import RunDB


def test_three_round_run_settles_pnl_pro_rata(tmp_path) -> None:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    config = deepcopy(DEFAULT_CONFIG)
    config["config"]["run"].update(
        {"lobby_duration_seconds": 600, "voting_interval_seconds": 300, "total_rounds": 3}
    )
    config["config"]["broadcast"]["journal_path"] = str(tmp_path / "events.jsonl")
    offset = {"v": 0.0}
    log = logging.getLogger("test.e2e")
    venue = PaperVenueAdapter(log, start_price=150.0)
    ledger = PaperLedger(log)
    app = build_app(
        config,
        db=RunDB(db_path),
        venue=venue,
        ledger=ledger,
        chaos_source=lambda: ChaosModifiers(leverage=5.0, position_size_percent=50.0),
        clock=lambda: time.time() + offset["v"],
    )

    async def _run():
        await app.initialize()
        events = app.broadcaster.subscribe()
        run = await app.runs.create_run()
        await app.runs.join_run(run.id, "alice", 10.0)
        await app.runs.join_run(run.id, "bob", 20.0)

        # lobby ends: start on ledger, open round 1 at 150
        offset["v"] = 600
        await app.scheduler.tick()
        await app.rounds.cast_vote(run.id, "alice", 1, "LONG")
        await app.rounds.cast_vote(run.id, "bob", 1, "SHORT")

        # round 1 tie -> SKIP; round 2 opens
        offset["v"] = 900
        await app.scheduler.tick()
        await app.rounds.cast_vote(run.id, "alice", 2, "LONG")
        await app.rounds.cast_vote(run.id, "bob", 2, "LONG")

        # round 2 LONG opens at 150; round 3 opens
        offset["v"] = 1200
        await app.scheduler.tick()
        venue.set_price("SOL-PERP", 153.0)

        # final round: close trade 2 at 153, trade 3 (no votes) skips, settle
        offset["v"] = 1500
        await app.scheduler.tick()
        await app.close()
        return run, app.broadcaster.drain(events)

    run, events = asyncio.run(_run())

    ended = app.db.get_run(run.id)
    assert ended.status == "ENDED"
    assert ended.starting_pool == pytest.approx(30.0)
    assert ended.total_pool == pytest.approx(31.5)

    trades = app.db.list_trades(run.id)
    assert [(t.round, t.direction) for t in trades] == [(1, "SKIP"), (2, "LONG"), (3, "SKIP")]
    assert all(not t.is_open for t in trades)
    assert trades[0].entry_price == 150.0 and trades[0].pnl == 0.0
    assert trades[1].entry_price == 150.0 and trades[1].exit_price == 153.0
    assert trades[1].pnl == pytest.approx(1.5)
    assert trades[1].notional == pytest.approx(15.0)

    participants = {p.user_id: p for p in app.db.list_participants(run.id)}
    assert participants["alice"].final_share == pytest.approx(10.5)
    assert participants["bob"].final_share == pytest.approx(21.0)
    assert participants["alice"].total_votes == 2 and participants["alice"].votes_correct == 1
    assert participants["bob"].total_votes == 2 and participants["bob"].votes_correct == 1
    check_settlement_sum(
        [ParticipantShare(p.user_id, p.deposit_amount, 0.0, p.final_share) for p in participants.values()],
        30.0,
        1.5,
    )

    state = asyncio.run(ledger.fetch_run(run.id))
    assert state.status == LEDGER_STATUS_SETTLED
    assert state.final_balance == pytest.approx(31.5)
    assert sorted(ledger.settlements[run.id]) == [("alice", 10.5), ("bob", 21.0)]
    assert ledger.call_count("start_run", run.id) == 1
    assert ledger.call_count("settle_run", run.id) == 1

    assert [r.status for r in app.db.list_rounds(run.id)] == ["EXECUTING"] * 3
    log_types = [e["type"] for e in reversed(app.db.get_system_logs(run.id, limit=500))]
    assert log_types[0] == "SYSTEM"
    assert log_types[-1] == "RUN_END"
    assert log_types.count("ROUND_START") == 3
    assert "CONSENSUS_REACHED" in log_types

    types = {e["type"] for e in events}
    assert {EVENT_RUN_UPDATE, EVENT_ROUND_UPDATE, EVENT_VOTE_UPDATE, EVENT_TRADE_UPDATE} <= types
    assert events[-1]["type"] == EVENT_RUN_UPDATE
    assert events[-1]["data"]["status"] == "ENDED"
    assert (tmp_path / "events.jsonl").read_text().count("\n") == app.broadcaster.published
