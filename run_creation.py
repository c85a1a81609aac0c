#!/usr/bin/env python3
"""
Automatic run creation.

Keeps exactly one run in flight: a fresh WAITING run is created from the
configured defaults whenever no run is WAITING or ACTIVE.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from logging_utils import get_logger
from run_db import RunRecord
from run_errors import RunError
from run_service import RunService
from run_status import RUN_STATUS_ACTIVE, RUN_STATUS_WAITING

DEFAULT_INTERVAL_SECONDS = 60.0


class RunCreator:
    def __init__(self, runs: RunService, interval_seconds: float = DEFAULT_INTERVAL_SECONDS):
        self.runs = runs
        self.interval_seconds = float(interval_seconds)
        self._running = False
        self._lock = asyncio.Lock()
        self.log = get_logger("run_creation")

    async def ensure_run(self) -> Optional[RunRecord]:
        """Create a run if none is in flight. Returns the new run, or None."""
        async with self._lock:
            in_flight = await self.runs.list_runs([RUN_STATUS_WAITING, RUN_STATUS_ACTIVE])
            if in_flight:
                self.log.debug(f"Run {in_flight[0].id} in flight ({in_flight[0].status}); not creating")
                return None
            run = await self.runs.create_run()
            self.log.info(f"Auto-created run {run.id} (lobby {run.lobby_duration}s, {run.total_rounds} rounds)")
            return run

    async def start(self) -> None:
        self._running = True
        self.log.info(f"Starting run creator ({self.interval_seconds}s interval)")
        while self._running:
            try:
                await self.ensure_run()
            except (RunError, ValueError) as exc:
                self.log.error(f"Run creation failed: {exc}")
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        self._running = False
        self.log.info("Run creator stopped")
