#!/usr/bin/env python3
"""
Paper venue: dry-run execution against an in-process mark price.

Used for local runs and tests. Fills happen at the current mark; the mark
is either set explicitly (set_price) or left at the configured start price.
Failure switches let callers exercise degraded paths.
"""

from __future__ import annotations

import time
import uuid
from typing import Dict, List, Optional

from chaos_modifiers import calculate_base_amount
from pool_accounting import calculate_trade_pnl
from run_errors import ExternalServiceError
from run_status import DIRECTION_LONG, DIRECTION_SHORT

from .base import CloseResult, OpenResult, Position, VenueAdapter


class PaperVenueAdapter(VenueAdapter):
    """In-process venue with simulated fills."""

    def __init__(self, log, start_price: float = 150.0):
        super().__init__(log)
        self._start_price = float(start_price)
        self._prices: Dict[str, float] = {}
        self._positions: Dict[str, Position] = {}
        # Failure injection
        self.fail_open = False
        self.fail_close = False
        self.fail_price = False
        self.close_without_pnl = False
        self.calls: List[Dict[str, object]] = []

    async def initialize(self) -> bool:
        self._initialized = True
        self.log.info(f"Paper venue initialized (start price {self._start_price})")
        return True

    def set_price(self, market_symbol: str, price: float) -> None:
        self._prices[str(market_symbol).upper()] = float(price)

    def _mark(self, market_symbol: str) -> float:
        return self._prices.get(str(market_symbol).upper(), self._start_price)

    @staticmethod
    def _key(market_symbol: str, client_ref: Optional[str]) -> str:
        return str(client_ref) if client_ref else str(market_symbol).upper()

    async def price(self, market_symbol: str) -> float:
        self.calls.append({'op': 'price', 'market': market_symbol})
        if self.fail_price:
            raise ExternalServiceError("venue", f"price unavailable for {market_symbol}")
        return self._mark(market_symbol)

    async def open(
        self,
        market_symbol: str,
        direction: str,
        notional_size: float,
        leverage: float,
        client_ref: Optional[str] = None,
    ) -> OpenResult:
        self.calls.append({
            'op': 'open',
            'market': market_symbol,
            'direction': direction,
            'notional': notional_size,
            'leverage': leverage,
            'client_ref': client_ref,
        })
        if self.fail_open:
            return OpenResult(success=False, error="paper venue: open rejected")
        d = str(direction or '').upper()
        if d not in (DIRECTION_LONG, DIRECTION_SHORT):
            return OpenResult(success=False, error=f"paper venue: invalid direction {direction}")
        if notional_size <= 0:
            return OpenResult(success=False, error="paper venue: notional must be positive")
        key = self._key(market_symbol, client_ref)
        if key in self._positions:
            return OpenResult(success=False, error=f"paper venue: position {key} already open")

        entry = self._mark(market_symbol)
        self._positions[key] = Position(
            market_symbol=str(market_symbol).upper(),
            direction=d,
            notional=float(notional_size),
            leverage=float(leverage),
            entry_price=entry,
            base_amount=calculate_base_amount(notional_size, leverage, entry),
            client_ref=client_ref,
            opened_at=time.time(),
        )
        tx_id = f"paper-{uuid.uuid4().hex[:12]}"
        self.log.debug(f"Paper open {d} {market_symbol} notional={notional_size:.2f} lev={leverage}x @ {entry}")
        return OpenResult(success=True, entry_price=entry, tx_id=tx_id)

    async def close(self, market_symbol: str, client_ref: Optional[str] = None) -> CloseResult:
        self.calls.append({'op': 'close', 'market': market_symbol, 'client_ref': client_ref})
        if self.fail_close:
            return CloseResult(success=False, error="paper venue: close rejected")
        key = self._key(market_symbol, client_ref)
        pos = self._positions.pop(key, None)
        if pos is None:
            return CloseResult(success=False, error=f"paper venue: no open position {key}")
        exit_price = self._mark(market_symbol)
        pnl = calculate_trade_pnl(pos.direction, pos.entry_price, exit_price, pos.notional, pos.leverage)
        return CloseResult(
            success=True,
            exit_price=exit_price,
            pnl=None if self.close_without_pnl else pnl,
            tx_id=f"paper-{uuid.uuid4().hex[:12]}",
        )

    async def open_positions(self) -> List[Position]:
        out = []
        for pos in self._positions.values():
            mark = self._mark(pos.market_symbol)
            pos.unrealized_pnl = calculate_trade_pnl(
                pos.direction, pos.entry_price, mark, pos.notional, pos.leverage
            )
            out.append(pos)
        return out
