#!/usr/bin/env python3
"""
Service entrypoint for chaosrun.

Builds the process-wide singletons once (database, venue, ledger,
broadcaster, run locks, services, scheduler) and runs the scheduler loop
until SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from broadcaster import RunBroadcaster
from chaos_modifiers import seeded_chaos_source
from config_env import RunDefaults, get_nested, load_config
from env_utils import CHAOSRUN_ROOT, ensure_runtime_paths
from exchanges import VenueAdapter, build_venue
from ledger import LedgerAdapter, build_ledger
from logging_utils import get_logger, setup_logging
from run_creation import RunCreator
from run_db import RunDB
from run_locks import RunLockRegistry
from run_scheduler import RunScheduler
from run_service import RunService
from settlement import SettlementReconciler
from trade_execution import TradeExecutor
from voting_rounds import VotingRoundManager


def resolve_path(raw: str) -> str:
    """Relative config paths are anchored at the project root."""
    p = Path(str(raw)).expanduser()
    if not p.is_absolute():
        p = Path(CHAOSRUN_ROOT) / p
    return str(p)


@dataclass
class ChaosRunApp:
    config: Dict[str, Any]
    db: RunDB
    venue: VenueAdapter
    ledger: LedgerAdapter
    broadcaster: RunBroadcaster
    locks: RunLockRegistry
    runs: RunService
    rounds: VotingRoundManager
    trades: TradeExecutor
    settlement: SettlementReconciler
    scheduler: RunScheduler
    creator: RunCreator

    async def initialize(self) -> None:
        if not await self.venue.initialize():
            raise RuntimeError(f"Failed to initialize venue {self.venue.name}")
        if not await self.ledger.initialize():
            raise RuntimeError(f"Failed to initialize ledger {self.ledger.name}")

    async def close(self) -> None:
        await self.broadcaster.flush()
        await self.venue.close_adapter()
        await self.ledger.close_adapter()
        self.db.close()


def build_app(
    config: Dict[str, Any],
    *,
    db: Optional[RunDB] = None,
    venue: Optional[VenueAdapter] = None,
    ledger: Optional[LedgerAdapter] = None,
    chaos_source=None,
    clock: Callable[[], float] = time.time,
) -> ChaosRunApp:
    """Wire every collaborator from config; tests may inject db/venue/ledger."""
    defaults = RunDefaults.from_config(config)
    defaults.validate()

    external_timeout = float(get_nested(config, "config", "scheduler", "external_timeout_seconds", default=15.0))
    journal = get_nested(config, "config", "broadcast", "journal_path", default="") or ""

    db = db or RunDB(resolve_path(get_nested(config, "config", "db_path")))
    venue = venue or build_venue(config, get_logger("venue"))
    ledger = ledger or build_ledger(config, get_logger("ledger"))
    broadcaster = RunBroadcaster(
        journal_path=resolve_path(journal) if journal else None,
        queue_size=int(get_nested(config, "config", "broadcast", "queue_size", default=256)),
    )
    if chaos_source is None:
        seed = get_nested(config, "config", "chaos", "seed", default=None)
        if seed is not None:
            chaos_source = seeded_chaos_source(int(seed))
    locks = RunLockRegistry(db)

    runs = RunService(db, ledger, broadcaster, defaults, locks=locks)
    rounds = VotingRoundManager(db, venue, broadcaster, external_timeout=external_timeout, clock=clock)
    trades = TradeExecutor(
        db,
        venue,
        rounds,
        broadcaster,
        ledger=ledger,
        external_timeout=external_timeout,
        chaos_source=chaos_source,
    )
    settlement = SettlementReconciler(
        db,
        ledger,
        trades,
        broadcaster,
        balance_tolerance=float(get_nested(config, "config", "settlement", "balance_tolerance", default=0.01)),
        sum_epsilon=float(get_nested(config, "config", "settlement", "sum_epsilon", default=1e-6)),
        external_timeout=external_timeout,
    )
    scheduler = RunScheduler(
        db,
        rounds,
        trades,
        settlement,
        locks,
        broadcaster,
        tick_interval=float(get_nested(config, "config", "scheduler", "tick_interval_seconds", default=5.0)),
        run_timeout=float(get_nested(config, "config", "scheduler", "run_timeout_seconds", default=60.0)),
        clock=clock,
    )
    creator = RunCreator(
        runs,
        interval_seconds=float(get_nested(config, "config", "auto_create", "interval_seconds", default=60.0)),
    )
    return ChaosRunApp(
        config=config,
        db=db,
        venue=venue,
        ledger=ledger,
        broadcaster=broadcaster,
        locks=locks,
        runs=runs,
        rounds=rounds,
        trades=trades,
        settlement=settlement,
        scheduler=scheduler,
        creator=creator,
    )


async def run_loop(app: ChaosRunApp, log: logging.Logger) -> None:
    """Run the scheduler (and the auto-creator when enabled) until signalled."""
    stop_event = asyncio.Event()

    def _stop() -> None:
        app.scheduler.stop()
        app.creator.stop()
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    tasks = [asyncio.create_task(app.scheduler.start())]
    if bool(get_nested(app.config, "config", "auto_create", "enabled", default=False)):
        tasks.append(asyncio.create_task(app.creator.start()))

    log.info(f"chaosrun service running ({len(tasks)} worker(s))")
    await stop_event.wait()
    await asyncio.gather(*tasks, return_exceptions=True)
    log.info("chaosrun service stopped")


async def serve(config_path: Optional[str] = None, once: bool = False) -> int:
    log = get_logger("chaosrun")
    config = load_config(Path(config_path) if config_path else None)
    app = build_app(config)
    try:
        await app.initialize()
        if once:
            report = await app.scheduler.tick()
            log.info(f"Single tick: {report.to_dict()}")
        else:
            await run_loop(app, log)
        return 0
    finally:
        await app.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="chaosrun run lifecycle service")
    parser.add_argument("--config", default=None, help="Path to chaosrun.yaml")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--once", action="store_true", help="Run a single scheduler tick and exit")
    args = parser.parse_args()

    ensure_runtime_paths()
    setup_logging("chaosrun", log_file=args.log_file, verbose=args.verbose)
    return asyncio.run(serve(args.config, once=args.once))


if __name__ == "__main__":
    raise SystemExit(main())
