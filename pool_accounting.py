#!/usr/bin/env python3
"""
Pool accounting for collective runs.

The pool is the single shared balance of a run. It only moves through
realized PnL and never goes below zero. At the end of a run the total PnL
is split across participants in proportion to their deposits:

    final_share = deposit + total_pnl * deposit / sum(deposits)

The sum of final shares must equal starting_pool + total_pnl (within
rounding); that law is checked before anything is submitted to the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from logging_utils import get_logger
from run_errors import ReconciliationError
from run_status import DIRECTION_LONG, DIRECTION_SHORT

# USDC token precision
USDC_DECIMALS = 6
DEFAULT_SUM_EPSILON = 1e-6

_log = get_logger("pool_accounting")


def round_usdc(value: float) -> float:
    return round(float(value), USDC_DECIMALS)


@dataclass(frozen=True)
class ParticipantShare:
    user_id: str
    deposit_amount: float
    allocated_pnl: float
    final_share: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "deposit_amount": self.deposit_amount,
            "allocated_pnl": self.allocated_pnl,
            "final_share": self.final_share,
        }


def apply_realized_pnl(pool: float, pnl: float, *, context: str = "") -> float:
    """Return the pool after realizing pnl, clamped at zero."""
    after = float(pool) + float(pnl)
    if after < 0:
        _log.warning(
            f"Pool clamp anomaly{(' (' + context + ')') if context else ''}: "
            f"pool={pool:.6f} pnl={pnl:+.6f} would leave {after:.6f}; clamping to 0"
        )
        return 0.0
    return round_usdc(after)


def calculate_trade_pnl(
    direction: str,
    entry_price: float,
    exit_price: float,
    notional: float,
    leverage: float,
) -> float:
    """Leveraged PnL on a notional: notional * leverage * price move."""
    d = str(direction or "").upper()
    if d not in (DIRECTION_LONG, DIRECTION_SHORT):
        return 0.0
    if entry_price <= 0 or exit_price <= 0 or notional <= 0:
        return 0.0
    move = (float(exit_price) - float(entry_price)) / float(entry_price)
    if d == DIRECTION_SHORT:
        move = -move
    return round_usdc(float(notional) * float(leverage) * move)


def pnl_percentage(pnl: float, pool_before: float) -> float:
    if pool_before <= 0:
        return 0.0
    return round(float(pnl) / float(pool_before) * 100.0, 4)


def distribute_pnl(total_pnl: float, participants: Sequence[Any]) -> List[ParticipantShare]:
    """Allocate total_pnl proportionally to deposits.

    ``participants`` are objects or dicts exposing ``user_id`` and
    ``deposit_amount``. The rounding residual goes to the largest depositor.
    """
    rows = []
    for p in participants:
        if isinstance(p, dict):
            rows.append((str(p["user_id"]), float(p["deposit_amount"])))
        else:
            rows.append((str(p.user_id), float(p.deposit_amount)))
    if not rows:
        return []

    total_deposits = sum(dep for _, dep in rows)
    if total_deposits <= 0:
        return [ParticipantShare(uid, dep, 0.0, max(0.0, round_usdc(dep))) for uid, dep in rows]

    shares: List[ParticipantShare] = []
    for uid, dep in rows:
        allocated = round_usdc(float(total_pnl) * dep / total_deposits)
        shares.append(ParticipantShare(uid, dep, allocated, max(0.0, round_usdc(dep + allocated))))

    target = max(0.0, round_usdc(total_deposits + float(total_pnl)))
    residual = round_usdc(target - sum(s.final_share for s in shares))
    if residual != 0.0:
        idx = max(range(len(shares)), key=lambda i: shares[i].deposit_amount)
        s = shares[idx]
        shares[idx] = ParticipantShare(
            s.user_id,
            s.deposit_amount,
            round_usdc(s.allocated_pnl + residual),
            max(0.0, round_usdc(s.final_share + residual)),
        )
    return shares


def check_settlement_sum(
    shares: Sequence[ParticipantShare],
    starting_pool: float,
    total_pnl: float,
    epsilon: float = DEFAULT_SUM_EPSILON,
) -> float:
    """Raise ReconciliationError unless sum(final_share) == starting_pool + total_pnl."""
    total = round_usdc(sum(s.final_share for s in shares))
    expected = round_usdc(max(0.0, float(starting_pool) + float(total_pnl)))
    tolerance = max(float(epsilon), 10 ** -USDC_DECIMALS) + 1e-9
    if abs(total - expected) > tolerance:
        raise ReconciliationError(
            f"settlement sum mismatch: shares={total:.6f} expected={expected:.6f} "
            f"(starting_pool={starting_pool:.6f} total_pnl={total_pnl:+.6f})"
        )
    return total
