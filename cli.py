#!/usr/bin/env python3
"""
Operator CLI for chaosrun.

Commands:
- serve: run the scheduler loop (same as main.py)
- tick: run a single scheduler tick
- create-run: open a new lobby
- join / leave: lobby membership
- vote: cast a vote in an open round
- force-start / force-end: admin overrides (take the same per-run lock as the scheduler)
- status: show runs, or one run in detail
- logs: show a run's system log

Paper venue/ledger state lives in-process; cross-process operator actions
are meant for gateway mode.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

from config_env import load_config
from env_utils import ensure_runtime_paths
from logging_utils import setup_logging
from main import ChaosRunApp, build_app, serve
from run_errors import RunError


def _load_app(args) -> ChaosRunApp:
    config = load_config(Path(args.config) if getattr(args, "config", None) else None)
    return build_app(config)


async def _with_app(args, fn) -> int:
    app = _load_app(args)
    try:
        await app.initialize()
        return await fn(app)
    except RunError as exc:
        print(f"❌ {type(exc).__name__}: {exc}")
        return 1
    finally:
        await app.close()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _fmt_run(run) -> str:
    countdown = f" countdown={run.countdown}s" if run.countdown is not None and run.status == "WAITING" else ""
    return (
        f"{run.id}  {run.status:<7} {run.market_symbol:<9} "
        f"round {run.current_round}/{run.total_rounds}  pool ${run.total_pool:.2f}{countdown}"
    )


async def cmd_tick(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        report = await app.scheduler.tick()
        print(f"Tick complete: {report.to_dict()}")
        return 0 if report.errors == 0 else 1

    return await _with_app(args, _run)


async def cmd_create_run(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        overrides: Dict[str, Any] = {}
        if args.lobby_seconds is not None:
            overrides["lobby_duration"] = args.lobby_seconds
        if args.voting_seconds is not None:
            overrides["voting_interval"] = args.voting_seconds
        if args.rounds is not None:
            overrides["total_rounds"] = args.rounds
        if args.market:
            overrides["market_symbol"] = args.market.upper()
        try:
            run = await app.runs.create_run(**overrides)
        except ValueError as exc:
            print(f"❌ Invalid run parameters: {exc}")
            return 1
        print(f"✅ Created run {run.id}")
        print(f"  {_fmt_run(run)}")
        return 0

    return await _with_app(args, _run)


async def cmd_join(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        participant = await app.runs.join_run(args.run_id, args.user_id, args.amount)
        run = await app.runs.get_run(args.run_id)
        print(f"✅ {participant.user_id} joined with ${participant.deposit_amount:.2f} (pool ${run.total_pool:.2f})")
        return 0

    return await _with_app(args, _run)


async def cmd_leave(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        refunded = await app.runs.leave_run(args.run_id, args.user_id)
        print(f"✅ {args.user_id} left; refunded ${refunded:.2f}")
        return 0

    return await _with_app(args, _run)


async def cmd_vote(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        dist = await app.rounds.cast_vote(args.run_id, args.user_id, args.round, args.choice)
        print(
            f"✅ Vote recorded for round {args.round}: "
            f"LONG {dist.long} / SHORT {dist.short} / SKIP {dist.skip}"
        )
        return 0

    return await _with_app(args, _run)


async def cmd_force_start(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        started = await app.scheduler.force_start(args.run_id)
        print("✅ Run started" if started else "Run was already ACTIVE")
        return 0

    return await _with_app(args, _run)


async def cmd_force_end(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        ended = await app.scheduler.force_end(args.run_id)
        print("✅ Run ended" if ended else "Run was already ENDED")
        return 0

    return await _with_app(args, _run)


async def cmd_status(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        if args.run_id:
            summary = await app.runs.run_summary(args.run_id)
            if args.json:
                _print_json(summary)
                return 0
            run = await app.runs.get_run(args.run_id)
            print(_fmt_run(run))
            print(f"\nParticipants ({summary['participant_count']}):")
            for p in summary["participants"]:
                share = "-" if p["final_share"] is None else f"${p['final_share']:.2f}"
                print(
                    f"  {p['user_id']:<20} deposit ${p['deposit_amount']:.2f}  final {share}  "
                    f"votes {p['votes_correct']}/{p['total_votes']}"
                )
            print(f"\nTrades ({len(summary['trades'])}), total pnl ${summary['total_pnl']:+.2f}:")
            for t in summary["trades"]:
                exit_px = "open" if t["is_open"] else f"{t['exit_price']}"
                print(
                    f"  R{t['round']:<3} {t['direction']:<5} {t['leverage']}x {t['position_size_percent']}% "
                    f"entry {t['entry_price']} exit {exit_px} pnl ${t['pnl']:+.2f}"
                )
            return 0

        statuses = [s.upper() for s in args.status] if args.status else None
        runs = await app.runs.list_runs(statuses)
        if args.json:
            _print_json([r.to_dict() for r in runs])
            return 0
        if not runs:
            print("No runs.")
            return 0
        for run in runs:
            print(_fmt_run(run))
        return 0

    return await _with_app(args, _run)


async def cmd_logs(args) -> int:
    async def _run(app: ChaosRunApp) -> int:
        logs = await asyncio.to_thread(app.db.get_system_logs, args.run_id, args.limit)
        if args.json:
            _print_json(logs)
            return 0
        for entry in reversed(logs):
            print(f"  [{entry['type']:<17}] {entry['message']}")
        return 0

    return await _with_app(args, _run)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="chaosrun operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="Path to chaosrun.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the scheduler loop")
    serve_parser.add_argument("--once", action="store_true", help="Run a single tick and exit")

    subparsers.add_parser("tick", help="Run a single scheduler tick")

    create_parser = subparsers.add_parser("create-run", help="Open a new lobby")
    create_parser.add_argument("--lobby-seconds", type=int, default=None, help="Lobby duration")
    create_parser.add_argument("--voting-seconds", type=int, default=None, help="Voting interval per round")
    create_parser.add_argument("--rounds", type=int, default=None, help="Total rounds")
    create_parser.add_argument("--market", default=None, help="Market symbol (e.g. SOL-PERP)")

    join_parser = subparsers.add_parser("join", help="Join a lobby")
    join_parser.add_argument("run_id")
    join_parser.add_argument("user_id")
    join_parser.add_argument("amount", type=float, help="Deposit in USDC")

    leave_parser = subparsers.add_parser("leave", help="Leave a lobby")
    leave_parser.add_argument("run_id")
    leave_parser.add_argument("user_id")

    vote_parser = subparsers.add_parser("vote", help="Cast a vote")
    vote_parser.add_argument("run_id")
    vote_parser.add_argument("user_id")
    vote_parser.add_argument("round", type=int)
    vote_parser.add_argument("choice", help="LONG, SHORT or SKIP")

    fs_parser = subparsers.add_parser("force-start", help="Start a run now")
    fs_parser.add_argument("run_id")

    fe_parser = subparsers.add_parser("force-end", help="End a run now")
    fe_parser.add_argument("run_id")

    status_parser = subparsers.add_parser("status", help="Show runs")
    status_parser.add_argument("run_id", nargs="?", help="Show one run in detail")
    status_parser.add_argument("--status", action="append", help="Filter by status (repeatable)")
    status_parser.add_argument("--json", action="store_true", help="JSON output")

    logs_parser = subparsers.add_parser("logs", help="Show a run's system log")
    logs_parser.add_argument("run_id")
    logs_parser.add_argument("--limit", type=int, default=50)
    logs_parser.add_argument("--json", action="store_true", help="JSON output")

    return parser


COMMANDS = {
    "tick": cmd_tick,
    "create-run": cmd_create_run,
    "join": cmd_join,
    "leave": cmd_leave,
    "vote": cmd_vote,
    "force-start": cmd_force_start,
    "force-end": cmd_force_end,
    "status": cmd_status,
    "logs": cmd_logs,
}


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    ensure_runtime_paths()
    setup_logging("chaosrun", verbose=args.verbose)

    if args.command == "serve":
        return asyncio.run(serve(args.config, once=args.once))
    return asyncio.run(COMMANDS[args.command](args))


if __name__ == "__main__":
    raise SystemExit(main())
