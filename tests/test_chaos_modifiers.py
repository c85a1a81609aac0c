#!/usr/bin/env python3
"""Chaos modifier sampling and validation."""

import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chaos_modifiers import (
    MAX_LEVERAGE,
    MAX_POSITION_SIZE_PERCENT,
    MIN_LEVERAGE,
    MIN_POSITION_SIZE_PERCENT,
    SLIPPAGE_TOLERANCE,
    ChaosModifiers,
    calculate_base_amount,
    calculate_position_size,
    deterministic_chaos_modifiers,
    generate_chaos_modifiers,
    seeded_chaos_source,
    validate_chaos_modifiers,
)
from run_errors import ValidationError


def test_generated_modifiers_stay_within_bounds() -> None:
    rng = random.Random(7)
    for _ in range(500):
        m = generate_chaos_modifiers(rng)
        assert MIN_LEVERAGE <= m.leverage <= MAX_LEVERAGE
        assert MIN_POSITION_SIZE_PERCENT <= m.position_size_percent <= MAX_POSITION_SIZE_PERCENT
        assert m.slippage_tolerance == SLIPPAGE_TOLERANCE
        assert round(m.leverage, 1) == m.leverage
        validate_chaos_modifiers(m)


def test_extreme_samples_are_clamped() -> None:
    class _Edge:
        def __init__(self, values):
            self._values = list(values)

        def uniform(self, lo, hi):
            return self._values.pop(0)

    m = generate_chaos_modifiers(_Edge([20.04, 9.96]))
    assert m.leverage == 20.0
    assert m.position_size_percent == 10.0


def test_deterministic_modifiers_repeat_for_same_seed() -> None:
    a = deterministic_chaos_modifiers(42)
    b = deterministic_chaos_modifiers(42)
    assert a == b
    validate_chaos_modifiers(a)
    assert deterministic_chaos_modifiers(43) != a


def test_seeded_source_replays_the_same_draw_sequence() -> None:
    first = seeded_chaos_source(7)
    second = seeded_chaos_source(7)
    draws = [first() for _ in range(4)]
    assert draws == [second() for _ in range(4)]
    assert draws[0] == deterministic_chaos_modifiers(7)
    assert draws[3] == deterministic_chaos_modifiers(10)
    for m in draws:
        validate_chaos_modifiers(m)


@pytest.mark.parametrize(
    "modifiers",
    [
        ChaosModifiers(leverage=0.5, position_size_percent=50.0),
        ChaosModifiers(leverage=21.0, position_size_percent=50.0),
        ChaosModifiers(leverage=5.0, position_size_percent=9.9),
        ChaosModifiers(leverage=5.0, position_size_percent=100.1),
        ChaosModifiers(leverage=5.0, position_size_percent=50.0, slippage_tolerance=0.01),
    ],
)
def test_validate_rejects_out_of_range(modifiers) -> None:
    with pytest.raises(ValidationError):
        validate_chaos_modifiers(modifiers)


def test_position_size_and_base_amount() -> None:
    assert calculate_position_size(30.0, 50.0) == pytest.approx(15.0)
    assert calculate_position_size(0.0, 50.0) == 0.0
    # $15 notional at 5x on a $150 market is 0.5 units
    assert calculate_base_amount(15.0, 5.0, 150.0) == pytest.approx(0.5)
    assert calculate_base_amount(15.0, 5.0, 0.0) == 0.0
