#!/usr/bin/env python3
"""Operator CLI routing against a temp database."""

import json
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import cli
from run_db import RunDB


def _config() -> tuple[str, str]:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as f:
        f.write(
            "config:\n"
            f"  db_path: {db_path}\n"
            "  run:\n"
            "    lobby_duration_seconds: 600\n"
            "    voting_interval_seconds: 300\n"
            "    total_rounds: 3\n"
            "  broadcast:\n"
            "    journal_path: ''\n"
        )
        cfg_path = f.name
    return cfg_path, db_path


def test_parser_routes_subcommands() -> None:
    parser = cli.build_parser()
    args = parser.parse_args(["vote", "run-1", "alice", "2", "long"])
    assert args.command == "vote"
    assert args.round == 2 and args.choice == "long"
    args = parser.parse_args(["status", "--status", "active", "--status", "waiting", "--json"])
    assert args.status == ["active", "waiting"] and args.json is True
    args = parser.parse_args(["create-run", "--rounds", "5", "--market", "eth-perp"])
    assert args.rounds == 5 and args.market == "eth-perp"
    assert set(cli.COMMANDS) >= {"tick", "join", "leave", "vote", "force-start", "force-end", "status", "logs"}


def test_no_command_prints_help() -> None:
    assert cli.main([]) == 1


def test_lobby_flow_through_cli(capsys) -> None:
    cfg, db_path = _config()

    assert cli.main(["--config", cfg, "create-run", "--rounds", "2"]) == 0
    run = RunDB(db_path).list_runs()[0]
    assert run.total_rounds == 2

    assert cli.main(["--config", cfg, "join", run.id, "alice", "10"]) == 0
    assert cli.main(["--config", cfg, "join", run.id, "bob", "20"]) == 0
    assert cli.main(["--config", cfg, "join", run.id, "alice", "10"]) == 1
    assert cli.main(["--config", cfg, "join", run.id, "carol", "1000"]) == 1
    assert cli.main(["--config", cfg, "leave", run.id, "bob"]) == 0
    out = capsys.readouterr().out
    assert "ConflictError" in out
    assert "ValidationError" in out

    # paper ledger state is per process; the start sequence recreates it
    assert cli.main(["--config", cfg, "force-start", run.id]) == 0
    assert cli.main(["--config", cfg, "vote", run.id, "alice", "1", "LONG"]) == 0
    assert cli.main(["--config", cfg, "vote", run.id, "alice", "1", "SHORT"]) == 1
    capsys.readouterr()

    assert cli.main(["--config", cfg, "status", run.id, "--json"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["status"] == "ACTIVE"
    assert summary["participant_count"] == 1
    assert summary["total_pool"] == 10.0
    assert summary["rounds"][0]["status"] == "OPEN"

    assert cli.main(["--config", cfg, "logs", run.id, "--json"]) == 0
    logs = json.loads(capsys.readouterr().out)
    assert {"USER_JOIN", "USER_LEAVE", "RUN_START", "ROUND_START"} <= {entry["type"] for entry in logs}


def test_force_end_cancels_empty_lobby(capsys) -> None:
    cfg, db_path = _config()
    assert cli.main(["--config", cfg, "create-run"]) == 0
    run = RunDB(db_path).list_runs()[0]
    assert cli.main(["--config", cfg, "force-end", run.id]) == 0
    assert "Run ended" in capsys.readouterr().out
    assert RunDB(db_path).get_run(run.id).status == "ENDED"

    assert cli.main(["--config", cfg, "status", "--status", "ended"]) == 0
    assert run.id in capsys.readouterr().out


def test_unknown_run_reports_error(capsys) -> None:
    cfg, _ = _config()
    assert cli.main(["--config", cfg, "join", "missing", "alice", "10"]) == 1
    assert "NotFoundError" in capsys.readouterr().out


def test_tick_runs_once(capsys) -> None:
    cfg, _ = _config()
    assert cli.main(["--config", cfg, "tick"]) == 0
    assert "Tick complete" in capsys.readouterr().out
