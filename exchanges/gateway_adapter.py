#!/usr/bin/env python3
"""
Execution gateway adapter.

Talks to an HTTP execution gateway that fronts the perpetual venue:

    GET  /price?market=SOL-PERP     -> {"price": 151.2}
    GET  /positions                 -> {"positions": [...]}
    POST /open   {market, direction, notional, leverage, client_ref}
    POST /close  {market, client_ref}

Order endpoints are never retried: the gateway may already have accepted
the order, and a duplicate submission is worse than a degraded round.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from chaos_modifiers import SLIPPAGE_TOLERANCE
from run_errors import ExternalServiceError

from .base import CloseResult, OpenResult, Position, VenueAdapter

DEFAULT_TIMEOUT_SECONDS = 15.0
MAX_PRICE_RETRIES = 3


def _float_or_none(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if out > 0 else None


class GatewayVenueAdapter(VenueAdapter):
    """aiohttp client for the execution gateway."""

    def __init__(
        self,
        log,
        base_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(log)
        self._base_url = str(base_url or "").rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = float(timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> bool:
        if not self._base_url:
            self.log.error("Gateway venue: base_url not configured")
            return False
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        connector = aiohttp.TCPConnector(limit=20, keepalive_timeout=30)
        timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
        self._session = aiohttp.ClientSession(headers=headers, connector=connector, timeout=timeout)
        self._initialized = True
        self.log.info(f"Gateway venue initialized ({self._base_url})")
        return True

    # ============================================================ HTTP helpers
    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            raise ExternalServiceError("venue", "HTTP session not available (not initialized or closed)")
        return self._session

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session = self._require_session()
        url = f"{self._base_url}{path}"
        last_error: Optional[BaseException] = None
        for attempt in range(MAX_PRICE_RETRIES):
            try:
                async with session.get(url, params=params) as resp:
                    if resp.status == 429:
                        self.log.warning(f"429 rate limit on {path} (attempt {attempt + 1}/{MAX_PRICE_RETRIES})")
                        last_error = None
                        await asyncio.sleep(0.5 * (attempt + 1))
                        continue
                    if resp.status != 200:
                        text = await resp.text()
                        raise ExternalServiceError("venue", f"HTTP {resp.status} on {path}: {text[:200]}")
                    return await resp.json()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                self.log.warning(f"Gateway GET {path} failed (attempt {attempt + 1}/{MAX_PRICE_RETRIES}): {exc}")
                await asyncio.sleep(0.5 * (attempt + 1))
        raise ExternalServiceError("venue", f"GET {path} failed after retries", cause=last_error)

    async def _post_order(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = self._require_session()
        url = f"{self._base_url}{path}"
        async with session.post(url, json=payload) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise ExternalServiceError("venue", f"HTTP {resp.status} on {path}: {text[:200]}")
            return await resp.json()

    # ============================================================ interface
    async def price(self, market_symbol: str) -> float:
        data = await self._get("/price", params={"market": market_symbol})
        px = _float_or_none(data.get("price"))
        if px is None:
            raise ExternalServiceError("venue", f"invalid price for {market_symbol}: {data.get('price')!r}")
        return px

    async def open(
        self,
        market_symbol: str,
        direction: str,
        notional_size: float,
        leverage: float,
        client_ref: Optional[str] = None,
    ) -> OpenResult:
        payload = {
            "market": market_symbol,
            "direction": str(direction).upper(),
            "notional": float(notional_size),
            "leverage": float(leverage),
            "slippage": SLIPPAGE_TOLERANCE,
            "client_ref": client_ref,
        }
        try:
            data = await self._post_order("/open", payload)
        except (ExternalServiceError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.log.warning(f"Gateway open failed for {market_symbol} ({client_ref}): {exc}")
            return OpenResult(success=False, error=str(exc) or type(exc).__name__)

        if not data.get("success", False):
            return OpenResult(success=False, error=str(data.get("error") or "open rejected"))
        return OpenResult(
            success=True,
            entry_price=_float_or_none(data.get("entry_price")),
            tx_id=data.get("tx_id"),
        )

    async def close(self, market_symbol: str, client_ref: Optional[str] = None) -> CloseResult:
        payload = {"market": market_symbol, "client_ref": client_ref}
        try:
            data = await self._post_order("/close", payload)
        except (ExternalServiceError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.log.warning(f"Gateway close failed for {market_symbol} ({client_ref}): {exc}")
            return CloseResult(success=False, error=str(exc) or type(exc).__name__)

        if not data.get("success", False):
            return CloseResult(success=False, error=str(data.get("error") or "close rejected"))
        pnl = data.get("pnl")
        try:
            pnl_val = float(pnl) if pnl is not None else None
        except (TypeError, ValueError):
            pnl_val = None
        return CloseResult(
            success=True,
            exit_price=_float_or_none(data.get("exit_price")),
            pnl=pnl_val,
            tx_id=data.get("tx_id"),
        )

    async def open_positions(self) -> List[Position]:
        data = await self._get("/positions")
        return [Position.from_dict(p) for p in (data.get("positions") or []) if isinstance(p, dict)]

    async def close_adapter(self) -> None:
        """Close aiohttp session to avoid resource leaks."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
