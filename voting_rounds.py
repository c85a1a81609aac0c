#!/usr/bin/env python3
"""
Voting round manager.

Round lifecycle per run:

    OPEN       accepting votes, timer running (voting_interval seconds)
    EXECUTING  votes tallied, distribution frozen, trade decided

A round is implicitly finished once the next round opens or the run ends.
Round creation needs a valid venue price: the price becomes the round's
reference entry price, so a missing price fails the operation instead of
degrading it.
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from typing import Callable, Dict, Optional

from broadcaster import EVENT_ROUND_UPDATE, EVENT_VOTE_UPDATE, RunBroadcaster
from chaos_modifiers import generate_chaos_modifiers
from exchanges import VenueAdapter
from logging_utils import get_logger
from run_db import RoundRecord, RunDB, RunRecord
from run_errors import (
    ExternalServiceError,
    NotFoundError,
    StateError,
    ValidationError,
)
from run_status import (
    DIRECTION_LONG,
    DIRECTION_SHORT,
    DIRECTION_SKIP,
    LOG_CONSENSUS_REACHED,
    LOG_ROUND_END,
    LOG_ROUND_START,
    ROUND_STATUS_OPEN,
    RUN_STATUS_ACTIVE,
    normalize_direction,
)
from vote_tally import VoteDistribution, count_votes, tally_direction

DEFAULT_EXTERNAL_TIMEOUT_SECONDS = 15.0


def time_remaining(round_rec: RoundRecord, voting_interval: int, now: Optional[float] = None) -> int:
    """Whole seconds left in the round's voting window (0 once expired)."""
    ts = time.time() if now is None else float(now)
    return max(0, int(math.ceil(round_rec.started_at + float(voting_interval) - ts)))


def is_round_expired(round_rec: RoundRecord, voting_interval: int, now: Optional[float] = None) -> bool:
    ts = time.time() if now is None else float(now)
    return ts - round_rec.started_at >= float(voting_interval)


def realized_direction(entry_price: float, exit_price: float) -> str:
    """Direction the market actually moved over a trade's holding period."""
    if exit_price > entry_price:
        return DIRECTION_LONG
    if exit_price < entry_price:
        return DIRECTION_SHORT
    return DIRECTION_SKIP


class VotingRoundManager:
    def __init__(
        self,
        db: RunDB,
        venue: VenueAdapter,
        broadcaster: RunBroadcaster,
        *,
        external_timeout: float = DEFAULT_EXTERNAL_TIMEOUT_SECONDS,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.venue = venue
        self.broadcaster = broadcaster
        self.external_timeout = float(external_timeout)
        self._rng = rng
        self._clock = clock
        self.log = get_logger("voting_rounds")

    async def fetch_price(self, market_symbol: str) -> float:
        """Current venue price; raises ExternalServiceError when absent or invalid."""
        try:
            price = await asyncio.wait_for(self.venue.price(market_symbol), timeout=self.external_timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError("venue", f"price lookup timed out for {market_symbol}", cause=exc) from exc
        try:
            value = float(price)
        except (TypeError, ValueError) as exc:
            raise ExternalServiceError("venue", f"invalid price for {market_symbol}: {price!r}", cause=exc) from exc
        if not math.isfinite(value) or value <= 0:
            raise ExternalServiceError("venue", f"invalid price for {market_symbol}: {price!r}")
        return value

    async def create_round(self, run: RunRecord, round_no: int) -> RoundRecord:
        existing = await asyncio.to_thread(self.db.get_round, run.id, round_no)
        if existing is not None:
            return existing

        price = await self.fetch_price(run.market_symbol)
        # Display sample only; execution draws the traded values.
        chaos = generate_chaos_modifiers(self._rng)

        round_rec, created = await asyncio.to_thread(
            self.db.create_round,
            run.id,
            round_no,
            leverage=chaos.leverage,
            position_size_percent=chaos.position_size_percent,
            current_price=price,
            time_remaining=run.voting_interval,
            started_at=self._clock(),
        )
        if not created:
            return round_rec

        self.log.info(
            f"Run {run.id}: round {round_no}/{run.total_rounds} open @ {price} "
            f"(preview {chaos.leverage}x, {chaos.position_size_percent}%)"
        )
        await asyncio.to_thread(
            self.db.record_system_log,
            run.id,
            LOG_ROUND_START,
            f"Round {round_no} started",
            {"round": round_no, "price": price, **chaos.to_dict()},
        )
        self.broadcaster.publish(
            run.id,
            EVENT_ROUND_UPDATE,
            {
                "round": round_no,
                "status": round_rec.status,
                "current_price": price,
                "leverage": round_rec.leverage,
                "position_size_percent": round_rec.position_size_percent,
                "time_remaining": round_rec.time_remaining,
            },
        )
        return round_rec

    async def cast_vote(self, run_id: str, user_id: str, round_no: int, choice: Optional[str]) -> VoteDistribution:
        if choice is None or not str(choice).strip():
            raise ValidationError("Vote choice is required")
        direction = normalize_direction(choice)
        if direction is None:
            raise ValidationError(f"Invalid vote choice: {choice!r} (expected LONG, SHORT or SKIP)")
        try:
            round_no = int(round_no)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid round: {round_no!r}") from exc

        run = await asyncio.to_thread(self.db.get_run, run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run.status != RUN_STATUS_ACTIVE:
            raise StateError("Run is not active")

        participant = await asyncio.to_thread(self.db.get_participant, run_id, user_id)
        if participant is None:
            raise NotFoundError(f"User {user_id} is not in this run")

        round_rec = await asyncio.to_thread(self.db.get_round, run_id, round_no)
        if round_rec is None or round_rec.status != ROUND_STATUS_OPEN:
            raise StateError(f"Voting round {round_no} is not open")

        await asyncio.to_thread(self.db.insert_vote, run_id, user_id, round_no, direction)
        self.log.info(f"Vote cast: {user_id} voted {direction} in run {run_id} round {round_no}")

        dist = await self.current_distribution(run_id, round_no)
        self.broadcaster.publish(
            run_id,
            EVENT_VOTE_UPDATE,
            {"round": round_no, "distribution": dist.to_dict(), "total": dist.total},
        )
        return dist

    async def current_distribution(self, run_id: str, round_no: int) -> VoteDistribution:
        votes = await asyncio.to_thread(self.db.list_votes, run_id, round_no)
        return count_votes(v["choice"] for v in votes)

    async def close_round(self, run_id: str, round_no: int) -> Dict[str, object]:
        """Tally and freeze round_no; closing an already-closed round returns its frozen tally."""
        round_rec = await asyncio.to_thread(self.db.get_round, run_id, round_no)
        if round_rec is None:
            raise NotFoundError(f"Round {round_no} of run {run_id} not found")

        if round_rec.status != ROUND_STATUS_OPEN:
            dist = VoteDistribution.from_dict(round_rec.vote_distribution)
            return {"direction": tally_direction(dist), "distribution": dist, "closed": False}

        votes = await asyncio.to_thread(self.db.list_votes, run_id, round_no)
        dist = count_votes(v["choice"] for v in votes)
        direction = tally_direction(dist)

        closed = await asyncio.to_thread(self.db.close_round, run_id, round_no, dist.to_dict())
        if not closed:
            # Lost a race with another closer; report what it froze.
            frozen = await asyncio.to_thread(self.db.get_round, run_id, round_no)
            dist = VoteDistribution.from_dict(frozen.vote_distribution if frozen else None)
            return {"direction": tally_direction(dist), "distribution": dist, "closed": False}

        voters = [v["user_id"] for v in votes]
        await asyncio.to_thread(self.db.increment_vote_counters, run_id, voters, total=1)

        self.log.info(
            f"Run {run_id}: round {round_no} closed -> {direction} "
            f"(L{dist.long}/S{dist.short}/K{dist.skip})"
        )
        await asyncio.to_thread(
            self.db.record_system_log,
            run_id,
            LOG_ROUND_END,
            f"Round {round_no} closed",
            {"round": round_no, "distribution": dist.to_dict()},
        )
        if direction != DIRECTION_SKIP:
            await asyncio.to_thread(
                self.db.record_system_log,
                run_id,
                LOG_CONSENSUS_REACHED,
                f"Consensus {direction} in round {round_no}",
                {"round": round_no, "direction": direction},
            )
        self.broadcaster.publish(
            run_id,
            EVENT_ROUND_UPDATE,
            {"round": round_no, "status": "EXECUTING", "direction": direction, "distribution": dist.to_dict()},
        )
        return {"direction": direction, "distribution": dist, "closed": True}

    async def score_round_votes(self, run_id: str, round_no: int, entry_price: float, exit_price: float) -> int:
        """Credit votes_correct to voters whose choice matched the realized move."""
        outcome = realized_direction(entry_price, exit_price)
        votes = await asyncio.to_thread(self.db.list_votes, run_id, round_no)
        winners = [v["user_id"] for v in votes if str(v["choice"]).upper() == outcome]
        if not winners:
            return 0
        return await asyncio.to_thread(self.db.increment_vote_counters, run_id, winners, correct=1)

    async def refresh_time_remaining(self, run: RunRecord, round_rec: RoundRecord) -> int:
        """Persist and broadcast the OPEN round's countdown (called every tick)."""
        remaining = time_remaining(round_rec, run.voting_interval, self._clock())
        await asyncio.to_thread(self.db.update_round_time_remaining, run.id, round_rec.round, remaining)
        self.broadcaster.publish(
            run.id,
            EVENT_ROUND_UPDATE,
            {"round": round_rec.round, "status": ROUND_STATUS_OPEN, "time_remaining": remaining},
        )
        return remaining
