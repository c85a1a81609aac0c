#!/usr/bin/env python3
"""Pool accounting: clamping, trade PnL, proportional distribution, sum law."""

import logging
import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from pool_accounting import (
    ParticipantShare,
    apply_realized_pnl,
    calculate_trade_pnl,
    check_settlement_sum,
    distribute_pnl,
    pnl_percentage,
)
from run_errors import ReconciliationError, StateError


def test_apply_realized_pnl_never_negative() -> None:
    rng = random.Random(3)
    for _ in range(200):
        pool = rng.uniform(0, 1000)
        pnl = rng.uniform(-5000, 5000)
        assert apply_realized_pnl(pool, pnl) >= 0.0


def test_pool_clamp_is_logged_as_anomaly(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="pool_accounting"):
        assert apply_realized_pnl(10.0, -25.0, context="run x") == 0.0
    assert any("clamp" in rec.getMessage().lower() for rec in caplog.records)


def test_apply_realized_pnl_gain() -> None:
    assert apply_realized_pnl(30.0, 1.5) == pytest.approx(31.5)


def test_trade_pnl_long_short_skip() -> None:
    assert calculate_trade_pnl("LONG", 150.0, 153.0, 15.0, 5.0) == pytest.approx(1.5)
    assert calculate_trade_pnl("SHORT", 150.0, 153.0, 15.0, 5.0) == pytest.approx(-1.5)
    assert calculate_trade_pnl("SKIP", 150.0, 153.0, 15.0, 5.0) == 0.0
    assert calculate_trade_pnl("LONG", 0.0, 153.0, 15.0, 5.0) == 0.0


def test_pnl_percentage_relative_to_pool() -> None:
    assert pnl_percentage(1.5, 30.0) == pytest.approx(5.0)
    assert pnl_percentage(1.5, 0.0) == 0.0


def test_distribute_pnl_proportional_one_to_two() -> None:
    shares = distribute_pnl(
        1.5,
        [{"user_id": "a", "deposit_amount": 10.0}, {"user_id": "b", "deposit_amount": 20.0}],
    )
    by_user = {s.user_id: s for s in shares}
    assert by_user["a"].final_share == pytest.approx(10.5)
    assert by_user["b"].final_share == pytest.approx(21.0)
    assert by_user["b"].final_share == pytest.approx(2 * by_user["a"].final_share)


def test_distribute_pnl_residual_keeps_sum_law() -> None:
    participants = [{"user_id": f"u{i}", "deposit_amount": 10.0} for i in range(3)]
    shares = distribute_pnl(1.0, participants)
    assert check_settlement_sum(shares, 30.0, 1.0) == pytest.approx(31.0)


def test_distribute_total_loss_clamps_shares_at_zero() -> None:
    shares = distribute_pnl(-30.0, [{"user_id": "a", "deposit_amount": 10.0}, {"user_id": "b", "deposit_amount": 20.0}])
    assert all(s.final_share == 0.0 for s in shares)
    check_settlement_sum(shares, 30.0, -30.0)


def test_sum_law_random_deposits() -> None:
    rng = random.Random(11)
    for _ in range(50):
        participants = [
            {"user_id": f"u{i}", "deposit_amount": round(rng.uniform(5, 100), 2)}
            for i in range(rng.randint(1, 12))
        ]
        start = sum(p["deposit_amount"] for p in participants)
        pnl = round(rng.uniform(-0.99 * start, start), 6)
        shares = distribute_pnl(pnl, participants)
        check_settlement_sum(shares, start, pnl)


def test_sum_law_violation_raises_state_error_subclass() -> None:
    bad = [ParticipantShare("a", 10.0, 0.0, 10.0), ParticipantShare("b", 20.0, 0.0, 25.0)]
    with pytest.raises(ReconciliationError):
        check_settlement_sum(bad, 30.0, 0.0)
    with pytest.raises(StateError):
        check_settlement_sum(bad, 30.0, 0.0)


def test_distribute_accepts_objects() -> None:
    class P:
        def __init__(self, user_id, deposit_amount):
            self.user_id = user_id
            self.deposit_amount = deposit_amount

    shares = distribute_pnl(0.0, [P("a", 5.0)])
    assert shares[0].final_share == 5.0
    assert distribute_pnl(1.0, []) == []
