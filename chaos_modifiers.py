#!/usr/bin/env python3
"""Chaos modifiers: randomized leverage and position size per round.

- Leverage: 1.0x - 20.0x (uniform, 1 decimal)
- Position size: 10% - 100% of the current pool (uniform, 1 decimal)
- Slippage tolerance: fixed 0.1%

A round samples twice: once at creation (display only) and once at execution;
the execution sample is the one actually traded and overwrites the round row.
"""

from __future__ import annotations

import itertools
import math
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from logging_utils import get_logger
from run_errors import ValidationError

MIN_LEVERAGE = 1.0
MAX_LEVERAGE = 20.0
MIN_POSITION_SIZE_PERCENT = 10.0
MAX_POSITION_SIZE_PERCENT = 100.0
SLIPPAGE_TOLERANCE = 0.001

_log = get_logger("chaos_modifiers")


@dataclass(frozen=True)
class ChaosModifiers:
    leverage: float
    position_size_percent: float
    slippage_tolerance: float = SLIPPAGE_TOLERANCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leverage": self.leverage,
            "position_size_percent": self.position_size_percent,
            "slippage_tolerance": self.slippage_tolerance,
        }


def _bounded(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, round(value, 1)))


def generate_chaos_modifiers(rng: Optional[random.Random] = None) -> ChaosModifiers:
    """Sample leverage and position size uniformly over their bounds."""
    r = rng or random
    modifiers = ChaosModifiers(
        leverage=_bounded(r.uniform(MIN_LEVERAGE, MAX_LEVERAGE), MIN_LEVERAGE, MAX_LEVERAGE),
        position_size_percent=_bounded(
            r.uniform(MIN_POSITION_SIZE_PERCENT, MAX_POSITION_SIZE_PERCENT),
            MIN_POSITION_SIZE_PERCENT,
            MAX_POSITION_SIZE_PERCENT,
        ),
    )
    _log.debug(
        f"Chaos modifiers generated: leverage={modifiers.leverage:.1f}x "
        f"size={modifiers.position_size_percent:.1f}%"
    )
    return modifiers


def deterministic_chaos_modifiers(seed: int) -> ChaosModifiers:
    """Seeded modifiers for demo runs and replays (same seed, same values)."""
    r1 = (math.sin(seed * 12.9898) + 1.0) / 2.0
    r2 = (math.sin(seed * 78.233) + 1.0) / 2.0
    size = MIN_POSITION_SIZE_PERCENT + r1 * (MAX_POSITION_SIZE_PERCENT - MIN_POSITION_SIZE_PERCENT)
    lev = MIN_LEVERAGE + r2 * (MAX_LEVERAGE - MIN_LEVERAGE)
    return ChaosModifiers(
        leverage=_bounded(lev, MIN_LEVERAGE, MAX_LEVERAGE),
        position_size_percent=_bounded(size, MIN_POSITION_SIZE_PERCENT, MAX_POSITION_SIZE_PERCENT),
    )


def seeded_chaos_source(seed: int) -> Callable[[], ChaosModifiers]:
    """Draw source for replayable runs: the n-th draw uses seed + n."""
    counter = itertools.count(int(seed))

    def draw() -> ChaosModifiers:
        return deterministic_chaos_modifiers(next(counter))

    return draw


def validate_chaos_modifiers(modifiers: ChaosModifiers) -> None:
    if not MIN_LEVERAGE <= modifiers.leverage <= MAX_LEVERAGE:
        raise ValidationError(f"Leverage must be between 1-20x, got {modifiers.leverage}x")
    if not MIN_POSITION_SIZE_PERCENT <= modifiers.position_size_percent <= MAX_POSITION_SIZE_PERCENT:
        raise ValidationError(
            f"Position size must be between 10-100%, got {modifiers.position_size_percent}%"
        )
    if modifiers.slippage_tolerance != SLIPPAGE_TOLERANCE:
        raise ValidationError(
            f"Slippage tolerance must be 0.1% (0.001), got {modifiers.slippage_tolerance}"
        )


def calculate_position_size(pool: float, position_size_percent: float) -> float:
    """Notional (USDC) committed to a round's trade."""
    return max(0.0, float(pool) * float(position_size_percent) / 100.0)


def calculate_base_amount(notional: float, leverage: float, price: float) -> float:
    """Base asset amount for a leveraged notional at the given price."""
    if price <= 0:
        return 0.0
    return float(notional) * float(leverage) / float(price)
