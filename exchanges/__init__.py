"""Execution venue adapters."""

from typing import Any, Dict

from config_env import get_nested

from .base import CloseResult, OpenResult, Position, VenueAdapter
from .gateway_adapter import GatewayVenueAdapter
from .paper_adapter import PaperVenueAdapter

VENUE_PAPER = "paper"
VENUE_GATEWAY = "gateway"
VALID_VENUE_MODES = {VENUE_PAPER, VENUE_GATEWAY}


def build_venue(config: Dict[str, Any], log) -> VenueAdapter:
    """Instantiate the venue adapter selected by ``venue.mode``."""
    mode = str(get_nested(config, "config", "venue", "mode", default=VENUE_PAPER) or VENUE_PAPER).lower()
    if mode not in VALID_VENUE_MODES:
        raise ValueError(f"Unknown venue mode: {mode} (expected one of {sorted(VALID_VENUE_MODES)})")
    if mode == VENUE_GATEWAY:
        return GatewayVenueAdapter(
            log,
            base_url=str(get_nested(config, "config", "venue", "base_url", default="") or ""),
            api_key=str(get_nested(config, "config", "venue", "api_key", default="") or ""),
            timeout_seconds=float(
                get_nested(config, "config", "scheduler", "external_timeout_seconds", default=15.0)
            ),
        )
    return PaperVenueAdapter(
        log,
        start_price=float(get_nested(config, "config", "venue", "start_price", default=150.0)),
    )


__all__ = [
    "VenueAdapter",
    "OpenResult",
    "CloseResult",
    "Position",
    "PaperVenueAdapter",
    "GatewayVenueAdapter",
    "build_venue",
    "VENUE_PAPER",
    "VENUE_GATEWAY",
    "VALID_VENUE_MODES",
]
