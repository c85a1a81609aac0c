"""Central run/round status constants and transition rules."""

from __future__ import annotations

from typing import Optional, Set


RUN_STATUS_WAITING = "WAITING"
RUN_STATUS_ACTIVE = "ACTIVE"
RUN_STATUS_ENDED = "ENDED"

VALID_RUN_STATUSES: Set[str] = {
    RUN_STATUS_WAITING,
    RUN_STATUS_ACTIVE,
    RUN_STATUS_ENDED,
}

# Runs only move forward; ENDED is terminal.
_ALLOWED_RUN_TRANSITIONS = {
    RUN_STATUS_WAITING: {RUN_STATUS_WAITING, RUN_STATUS_ACTIVE, RUN_STATUS_ENDED},
    RUN_STATUS_ACTIVE: {RUN_STATUS_ACTIVE, RUN_STATUS_ENDED},
    RUN_STATUS_ENDED: {RUN_STATUS_ENDED},
}

ROUND_STATUS_OPEN = "OPEN"
ROUND_STATUS_EXECUTING = "EXECUTING"

VALID_ROUND_STATUSES: Set[str] = {ROUND_STATUS_OPEN, ROUND_STATUS_EXECUTING}

DIRECTION_LONG = "LONG"
DIRECTION_SHORT = "SHORT"
DIRECTION_SKIP = "SKIP"

VALID_DIRECTIONS: Set[str] = {DIRECTION_LONG, DIRECTION_SHORT, DIRECTION_SKIP}
VALID_VOTE_CHOICES: Set[str] = VALID_DIRECTIONS

# system_logs.type values
LOG_RUN_START = "RUN_START"
LOG_RUN_END = "RUN_END"
LOG_ROUND_START = "ROUND_START"
LOG_ROUND_END = "ROUND_END"
LOG_TRADE_EXECUTED = "TRADE_EXECUTED"
LOG_CONSENSUS_REACHED = "CONSENSUS_REACHED"
LOG_USER_JOIN = "USER_JOIN"
LOG_USER_LEAVE = "USER_LEAVE"
LOG_SYSTEM = "SYSTEM"


def _normalize(value: object, valid: Set[str], default: Optional[str]) -> Optional[str]:
    if value is None:
        return default
    status = str(value).strip().upper()
    if not status or status not in valid:
        return default
    return status


def normalize_run_status(value: object, default: Optional[str] = None) -> Optional[str]:
    return _normalize(value, VALID_RUN_STATUSES, default)


def normalize_direction(value: object, default: Optional[str] = None) -> Optional[str]:
    return _normalize(value, VALID_DIRECTIONS, default)


def can_transition_run_status(current_status: object, new_status: object) -> bool:
    """Return True when the run transition is allowed (same-state is a no-op)."""
    nxt = normalize_run_status(new_status)
    cur = normalize_run_status(current_status)
    if nxt is None or cur is None:
        return False
    return nxt in _ALLOWED_RUN_TRANSITIONS.get(cur, set())
