#!/usr/bin/env python3
"""
Shared execution venue interface and dataclasses.

A venue executes one leveraged perpetual position per run at a time:
- open(): market entry sized by notional and leverage
- close(): flatten the run's position and report realized PnL
- price(): current mark for the run's market

open() and close() never raise; failures come back as results with
success=False so callers can apply their degraded-outcome policy.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class OpenResult:
    """Result of opening a position."""
    success: bool
    entry_price: Optional[float] = None
    tx_id: Optional[str] = None
    error: str = ""


@dataclass
class CloseResult:
    """Result of closing a position."""
    success: bool
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    tx_id: Optional[str] = None
    error: str = ""


@dataclass
class Position:
    """Open venue position."""
    market_symbol: str
    direction: str  # LONG, SHORT
    notional: float
    leverage: float
    entry_price: float
    base_amount: float = 0.0
    client_ref: Optional[str] = None
    unrealized_pnl: float = 0.0
    opened_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'market_symbol': self.market_symbol,
            'direction': self.direction,
            'notional': self.notional,
            'leverage': self.leverage,
            'entry_price': self.entry_price,
            'base_amount': self.base_amount,
            'client_ref': self.client_ref,
            'unrealized_pnl': self.unrealized_pnl,
            'opened_at': self.opened_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            market_symbol=str(data.get('market_symbol', '')),
            direction=str(data.get('direction', 'LONG')).upper(),
            notional=float(data.get('notional', 0.0) or 0.0),
            leverage=float(data.get('leverage', 1.0) or 1.0),
            entry_price=float(data.get('entry_price', 0.0) or 0.0),
            base_amount=float(data.get('base_amount', 0.0) or 0.0),
            client_ref=data.get('client_ref'),
            unrealized_pnl=float(data.get('unrealized_pnl', 0.0) or 0.0),
            opened_at=float(data.get('opened_at', 0.0) or 0.0),
        )


class VenueAdapter(abc.ABC):
    """Base class for execution venue adapters."""

    def __init__(self, log):
        self.log = log
        self._initialized = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def initialized(self) -> bool:
        return self._initialized

    @abc.abstractmethod
    async def initialize(self) -> bool:
        """Initialize the venue connection."""
        raise NotImplementedError

    @abc.abstractmethod
    async def open(
        self,
        market_symbol: str,
        direction: str,
        notional_size: float,
        leverage: float,
        client_ref: Optional[str] = None,
    ) -> OpenResult:
        """Open a leveraged position. Never raises."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self, market_symbol: str, client_ref: Optional[str] = None) -> CloseResult:
        """Close the position opened under client_ref (or the market's position). Never raises."""
        raise NotImplementedError

    @abc.abstractmethod
    async def price(self, market_symbol: str) -> float:
        """Return the current mark price. Raises ExternalServiceError when unavailable."""
        raise NotImplementedError

    @abc.abstractmethod
    async def open_positions(self) -> List[Position]:
        """Return all open positions held by this venue account."""
        raise NotImplementedError

    async def close_adapter(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
