#!/usr/bin/env python3
"""Voting rounds: creation, vote validation, closing and vote scoring."""

import asyncio
import logging
import random
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from broadcaster import EVENT_ROUND_UPDATE, EVENT_VOTE_UPDATE, RunBroadcaster
from chaos_modifiers import MAX_LEVERAGE, MIN_LEVERAGE
from exchanges import PaperVenueAdapter
from run_db import RunDB
from run_errors import ConflictError, ExternalServiceError, NotFoundError, StateError, ValidationError
from voting_rounds import VotingRoundManager, is_round_expired, realized_direction, time_remaining


def _setup(status="ACTIVE"):
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = RunDB(db_path)
    venue = PaperVenueAdapter(logging.getLogger("test.venue"), start_price=150.0)
    broadcaster = RunBroadcaster()
    mgr = VotingRoundManager(db, venue, broadcaster, rng=random.Random(5), external_timeout=1.0)
    run = db.create_run(
        market_symbol="SOL-PERP",
        lobby_duration=0,
        voting_interval=300,
        total_rounds=3,
        min_deposit=5.0,
        max_deposit=100.0,
        max_participants=10,
    )
    for user, amount in (("alice", 10.0), ("bob", 20.0), ("carol", 5.0)):
        db.add_participant(run.id, user, amount)
    if status == "ACTIVE":
        db.transition_run(run.id, "WAITING", "ACTIVE", starting_pool=35.0)
    return db, venue, broadcaster, mgr, db.get_run(run.id)


def test_create_round_uses_venue_price_and_is_idempotent() -> None:
    db, venue, broadcaster, mgr, run = _setup()

    async def _run():
        q = broadcaster.subscribe(run.id)
        first = await mgr.create_round(run, 1)
        venue.set_price("SOL-PERP", 999.0)
        again = await mgr.create_round(run, 1)
        return first, again, broadcaster.drain(q)

    first, again, events = asyncio.run(_run())
    assert first.status == "OPEN"
    assert first.current_price == 150.0
    assert MIN_LEVERAGE <= first.leverage <= MAX_LEVERAGE
    assert again.current_price == 150.0
    assert [e["type"] for e in events] == [EVENT_ROUND_UPDATE]
    assert db.get_system_logs(run.id)[0]["type"] == "ROUND_START"


def test_create_round_fails_without_price() -> None:
    db, venue, _, mgr, run = _setup()
    venue.fail_price = True
    with pytest.raises(ExternalServiceError):
        asyncio.run(mgr.create_round(run, 1))
    assert db.get_round(run.id, 1) is None


def test_fetch_price_rejects_non_positive() -> None:
    _, venue, _, mgr, _ = _setup()
    venue.set_price("SOL-PERP", 0.0)
    with pytest.raises(ExternalServiceError):
        asyncio.run(mgr.fetch_price("SOL-PERP"))


def test_cast_vote_happy_path_broadcasts_distribution() -> None:
    db, _, broadcaster, mgr, run = _setup()

    async def _run():
        await mgr.create_round(run, 1)
        q = broadcaster.subscribe(run.id)
        await mgr.cast_vote(run.id, "alice", 1, "long")
        dist = await mgr.cast_vote(run.id, "bob", 1, "SHORT")
        return dist, broadcaster.drain(q)

    dist, events = asyncio.run(_run())
    assert (dist.long, dist.short, dist.skip) == (1, 1, 0)
    assert [e["type"] for e in events] == [EVENT_VOTE_UPDATE, EVENT_VOTE_UPDATE]
    assert events[-1]["data"]["distribution"] == {"long": 1, "short": 1, "skip": 0}


def test_cast_vote_rejections() -> None:
    db, _, _, mgr, run = _setup()
    asyncio.run(mgr.create_round(run, 1))

    with pytest.raises(ValidationError):
        asyncio.run(mgr.cast_vote(run.id, "alice", 1, "MOON"))
    with pytest.raises(ValidationError):
        asyncio.run(mgr.cast_vote(run.id, "alice", 1, ""))
    with pytest.raises(NotFoundError):
        asyncio.run(mgr.cast_vote("missing", "alice", 1, "LONG"))
    with pytest.raises(NotFoundError):
        asyncio.run(mgr.cast_vote(run.id, "mallory", 1, "LONG"))
    with pytest.raises(StateError):
        asyncio.run(mgr.cast_vote(run.id, "alice", 2, "LONG"))

    asyncio.run(mgr.cast_vote(run.id, "alice", 1, "LONG"))
    with pytest.raises(ConflictError):
        asyncio.run(mgr.cast_vote(run.id, "alice", 1, "SHORT"))


def test_vote_rejected_while_waiting() -> None:
    _, _, _, mgr, run = _setup(status="WAITING")
    with pytest.raises(StateError):
        asyncio.run(mgr.cast_vote(run.id, "alice", 1, "LONG"))


def test_close_round_freezes_tally_and_counts_participation() -> None:
    db, _, _, mgr, run = _setup()

    async def _run():
        await mgr.create_round(run, 1)
        await mgr.cast_vote(run.id, "alice", 1, "LONG")
        await mgr.cast_vote(run.id, "bob", 1, "LONG")
        await mgr.cast_vote(run.id, "carol", 1, "SHORT")
        first = await mgr.close_round(run.id, 1)
        second = await mgr.close_round(run.id, 1)
        return first, second

    first, second = asyncio.run(_run())
    assert first["direction"] == "LONG" and first["closed"] is True
    assert second["direction"] == "LONG" and second["closed"] is False
    assert db.get_round(run.id, 1).status == "EXECUTING"
    assert {p.user_id: p.total_votes for p in db.list_participants(run.id)} == {"alice": 1, "bob": 1, "carol": 1}
    types = [e["type"] for e in db.get_system_logs(run.id)]
    assert "CONSENSUS_REACHED" in types and "ROUND_END" in types

    # late vote after close
    with pytest.raises(StateError):
        asyncio.run(mgr.cast_vote(run.id, "alice", 1, "SKIP"))


def test_close_round_tie_is_skip_without_consensus_log() -> None:
    db, _, _, mgr, run = _setup()

    async def _run():
        await mgr.create_round(run, 1)
        await mgr.cast_vote(run.id, "alice", 1, "LONG")
        await mgr.cast_vote(run.id, "bob", 1, "SHORT")
        return await mgr.close_round(run.id, 1)

    outcome = asyncio.run(_run())
    assert outcome["direction"] == "SKIP"
    assert "CONSENSUS_REACHED" not in [e["type"] for e in db.get_system_logs(run.id)]


def test_score_round_votes_credits_matching_direction() -> None:
    db, _, _, mgr, run = _setup()

    async def _run():
        await mgr.create_round(run, 1)
        await mgr.cast_vote(run.id, "alice", 1, "LONG")
        await mgr.cast_vote(run.id, "bob", 1, "SHORT")
        await mgr.cast_vote(run.id, "carol", 1, "LONG")
        await mgr.close_round(run.id, 1)
        return await mgr.score_round_votes(run.id, 1, 150.0, 153.0)

    assert asyncio.run(_run()) == 2
    correct = {p.user_id: p.votes_correct for p in db.list_participants(run.id)}
    assert correct == {"alice": 1, "bob": 0, "carol": 1}


def test_timer_helpers() -> None:
    db, _, _, mgr, run = _setup()
    rnd = asyncio.run(mgr.create_round(run, 1))
    assert time_remaining(rnd, 300, now=rnd.started_at + 100) == 200
    assert time_remaining(rnd, 300, now=rnd.started_at + 400) == 0
    assert not is_round_expired(rnd, 300, now=rnd.started_at + 299)
    assert is_round_expired(rnd, 300, now=rnd.started_at + 300)
    assert realized_direction(150.0, 153.0) == "LONG"
    assert realized_direction(150.0, 149.0) == "SHORT"
    assert realized_direction(150.0, 150.0) == "SKIP"
