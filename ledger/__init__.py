"""Ledger adapters (settlement contract boundary)."""

from typing import Any, Dict

from config_env import get_nested

from .base import (
    LEDGER_STATUS_ACTIVE,
    LEDGER_STATUS_PENDING,
    LEDGER_STATUS_SETTLED,
    LedgerAdapter,
    LedgerRunState,
)
from .gateway_ledger import GatewayLedger
from .paper_ledger import PaperLedger

LEDGER_PAPER = "paper"
LEDGER_GATEWAY = "gateway"
VALID_LEDGER_MODES = {LEDGER_PAPER, LEDGER_GATEWAY}


def build_ledger(config: Dict[str, Any], log) -> LedgerAdapter:
    """Instantiate the ledger adapter selected by ``ledger.mode``."""
    mode = str(get_nested(config, "config", "ledger", "mode", default=LEDGER_PAPER) or LEDGER_PAPER).lower()
    if mode not in VALID_LEDGER_MODES:
        raise ValueError(f"Unknown ledger mode: {mode} (expected one of {sorted(VALID_LEDGER_MODES)})")
    if mode == LEDGER_GATEWAY:
        return GatewayLedger(
            log,
            base_url=str(get_nested(config, "config", "ledger", "base_url", default="") or ""),
            api_key=str(get_nested(config, "config", "ledger", "api_key", default="") or ""),
            timeout_seconds=float(
                get_nested(config, "config", "scheduler", "external_timeout_seconds", default=15.0)
            ),
        )
    return PaperLedger(log)


__all__ = [
    "LedgerAdapter",
    "LedgerRunState",
    "PaperLedger",
    "GatewayLedger",
    "build_ledger",
    "LEDGER_STATUS_PENDING",
    "LEDGER_STATUS_ACTIVE",
    "LEDGER_STATUS_SETTLED",
    "LEDGER_PAPER",
    "LEDGER_GATEWAY",
]
