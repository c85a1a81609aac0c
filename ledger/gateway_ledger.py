#!/usr/bin/env python3
"""
Settlement gateway client.

The gateway signs and submits ledger instructions on our behalf:

    GET  /runs/{id}             -> run record (404 if never created)
    GET  /runs/{id}/vault       -> {"balance": 31.5}
    POST /runs                  {run_id, min_deposit, max_deposit, max_participants}
    POST /runs/{id}/vault
    POST /runs/{id}/start
    POST /runs/{id}/settle      {final_balance, shares: [{user_id, amount}]}

Instruction endpoints return {"tx_id": ...}. Nothing here retries a write.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Sequence, Tuple

import aiohttp

from pool_accounting import round_usdc
from run_errors import ExternalServiceError

from .base import LedgerAdapter, LedgerRunState

DEFAULT_TIMEOUT_SECONDS = 15.0


class GatewayLedger(LedgerAdapter):
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
            self.log.error("Gateway ledger: base_url not configured")
            return False
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._session = aiohttp.ClientSession(
            headers=headers,
            connector=aiohttp.TCPConnector(limit=10, keepalive_timeout=30),
            timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
        )
        self.log.info(f"Gateway ledger initialized ({self._base_url})")
        return True

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        allow_404: bool = False,
    ) -> Optional[Dict[str, Any]]:
        if not self._session or self._session.closed:
            raise ExternalServiceError("ledger", "HTTP session not available (not initialized or closed)")
        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(method, url, json=payload) as resp:
                if resp.status == 404 and allow_404:
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    raise ExternalServiceError("ledger", f"HTTP {resp.status} on {method} {path}: {text[:200]}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ExternalServiceError("ledger", f"{method} {path} failed: {exc}", cause=exc) from exc

    async def _instruction(self, path: str, payload: Optional[Dict[str, Any]] = None) -> str:
        data = await self._request("POST", path, payload or {})
        tx_id = (data or {}).get("tx_id")
        if not tx_id:
            raise ExternalServiceError("ledger", f"POST {path} returned no tx_id")
        return str(tx_id)

    async def fetch_run(self, run_id: str) -> Optional[LedgerRunState]:
        data = await self._request("GET", f"/runs/{run_id}", allow_404=True)
        if data is None:
            return None
        data.setdefault("run_id", run_id)
        return LedgerRunState.from_dict(data)

    async def create_run(self, run_id: str, min_deposit: float, max_deposit: float, max_participants: int) -> str:
        return await self._instruction(
            "/runs",
            {
                "run_id": run_id,
                "min_deposit": round_usdc(min_deposit),
                "max_deposit": round_usdc(max_deposit),
                "max_participants": int(max_participants),
            },
        )

    async def create_vault(self, run_id: str) -> str:
        return await self._instruction(f"/runs/{run_id}/vault")

    async def start_run(self, run_id: str) -> str:
        return await self._instruction(f"/runs/{run_id}/start")

    async def settle_run(self, run_id: str, final_balance: float, shares: Sequence[Tuple[str, float]]) -> str:
        return await self._instruction(
            f"/runs/{run_id}/settle",
            {
                "final_balance": round_usdc(final_balance),
                "shares": [{"user_id": uid, "amount": round_usdc(amount)} for uid, amount in shares],
            },
        )

    async def vault_balance(self, run_id: str) -> float:
        data = await self._request("GET", f"/runs/{run_id}/vault") or {}
        try:
            return round_usdc(float(data.get("balance")))
        except (TypeError, ValueError) as exc:
            raise ExternalServiceError("ledger", f"invalid vault balance for run {run_id}", cause=exc) from exc

    async def close_adapter(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
