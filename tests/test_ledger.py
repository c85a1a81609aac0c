#!/usr/bin/env python3
"""Ledger adapters: factory, paper state machine, and the settlement gateway client."""

import asyncio
import logging
import sys
from copy import deepcopy
from pathlib import Path

import pytest
from aiohttp import web

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import DEFAULT_CONFIG
from ledger import (
    LEDGER_STATUS_ACTIVE,
    LEDGER_STATUS_PENDING,
    LEDGER_STATUS_SETTLED,
    GatewayLedger,
    PaperLedger,
    build_ledger,
)
from run_errors import ExternalServiceError

LOG = logging.getLogger("test.ledger")


def test_build_ledger_selects_mode() -> None:
    cfg = deepcopy(DEFAULT_CONFIG)
    assert isinstance(build_ledger(cfg, LOG), PaperLedger)
    cfg["config"]["ledger"].update({"mode": "gateway", "base_url": "http://127.0.0.1:1"})
    assert isinstance(build_ledger(cfg, LOG), GatewayLedger)
    cfg["config"]["ledger"]["mode"] = "chain"
    with pytest.raises(ValueError):
        build_ledger(cfg, LOG)


def test_paper_ledger_state_machine() -> None:
    ledger = PaperLedger(LOG)

    async def _run():
        assert await ledger.fetch_run("r1") is None
        await ledger.create_run("r1", 5.0, 100.0, 10)
        with pytest.raises(ExternalServiceError):
            await ledger.create_run("r1", 5.0, 100.0, 10)
        await ledger.create_vault("r1")
        ledger.record_deposit("r1", "alice", 10.0)
        ledger.record_deposit("r1", "bob", 20.0)
        ledger.record_withdrawal("r1", "bob", 20.0)
        pending = await ledger.fetch_run("r1")
        with pytest.raises(ExternalServiceError):
            await ledger.settle_run("r1", 10.0, [("alice", 10.0)])
        await ledger.start_run("r1")
        # deposits are closed once ACTIVE
        ledger.record_deposit("r1", "carol", 50.0)
        active = await ledger.fetch_run("r1")
        ledger.adjust_vault("r1", 1.25)
        balance = await ledger.vault_balance("r1")
        await ledger.settle_run("r1", balance, [("alice", balance)])
        with pytest.raises(ExternalServiceError):
            await ledger.start_run("r1")
        return pending, active, balance, await ledger.fetch_run("r1")

    pending, active, balance, settled = asyncio.run(_run())
    assert pending.status == LEDGER_STATUS_PENDING
    assert pending.participant_count == 1 and pending.total_deposited == 10.0
    assert active.status == LEDGER_STATUS_ACTIVE and active.participant_count == 1
    assert balance == pytest.approx(11.25)
    assert settled.status == LEDGER_STATUS_SETTLED
    assert settled.final_balance == pytest.approx(11.25)
    assert ledger.settlements["r1"] == [("alice", 11.25)]


def test_gateway_ledger_vault_hooks_are_noops() -> None:
    cfg = deepcopy(DEFAULT_CONFIG)
    cfg["config"]["ledger"].update({"mode": "gateway", "base_url": "http://127.0.0.1:1"})
    ledger = build_ledger(cfg, LOG)
    # the remote ledger observes deposits itself; nothing is sent
    assert ledger.record_deposit("r1", "alice", 10.0) is None
    assert ledger.record_withdrawal("r1", "alice", 10.0) is None
    assert ledger.adjust_vault("r1", -2.5) is None


def test_paper_ledger_fetch_returns_copy() -> None:
    ledger = PaperLedger(LOG)

    async def _run():
        await ledger.create_run("r1", 5.0, 100.0, 10)
        snapshot = await ledger.fetch_run("r1")
        snapshot.status = LEDGER_STATUS_SETTLED
        return await ledger.status("r1"), await ledger.run_exists("r2")

    status, exists = asyncio.run(_run())
    assert status == LEDGER_STATUS_PENDING
    assert exists is False


def test_gateway_ledger_against_local_server() -> None:
    runs = {}
    posted = []

    async def get_run(request):
        run_id = request.match_info["run_id"]
        if run_id not in runs:
            return web.Response(status=404)
        return web.json_response(runs[run_id])

    async def create(request):
        body = await request.json()
        runs[body["run_id"]] = {"status": "pending", "participant_count": 0, "vault_created": False}
        posted.append(("create", body))
        return web.json_response({"tx_id": "tx-create"})

    async def start(request):
        runs[request.match_info["run_id"]]["status"] = "ACTIVE"
        return web.json_response({"tx_id": "tx-start"})

    async def settle(request):
        posted.append(("settle", await request.json()))
        return web.json_response({"tx_id": "tx-settle"})

    async def vault(request):
        return web.json_response({"balance": "31.5000004"})

    async def vault_create(request):
        return web.json_response({})

    async def _run():
        app = web.Application()
        app.router.add_get("/runs/{run_id}", get_run)
        app.router.add_post("/runs", create)
        app.router.add_post("/runs/{run_id}/start", start)
        app.router.add_post("/runs/{run_id}/settle", settle)
        app.router.add_get("/runs/{run_id}/vault", vault)
        app.router.add_post("/runs/{run_id}/vault", vault_create)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        host, port = runner.addresses[0][:2]

        ledger = GatewayLedger(LOG, f"http://{host}:{port}", timeout_seconds=5)
        try:
            await ledger.initialize()
            missing = await ledger.fetch_run("r1")
            tx = await ledger.create_run("r1", 5, 100, 10)
            with pytest.raises(ExternalServiceError):
                await ledger.create_vault("r1")  # gateway returned no tx_id
            await ledger.start_run("r1")
            state = await ledger.fetch_run("r1")
            balance = await ledger.vault_balance("r1")
            await ledger.settle_run("r1", balance, [("alice", 10.5), ("bob", 21.0)])
        finally:
            await ledger.close_adapter()
            await runner.cleanup()
        return missing, tx, state, balance

    missing, tx, state, balance = asyncio.run(_run())
    assert missing is None
    assert tx == "tx-create"
    assert state.run_id == "r1" and state.status == LEDGER_STATUS_ACTIVE
    assert balance == 31.5
    settle_body = [body for kind, body in posted if kind == "settle"][0]
    assert settle_body["shares"] == [{"user_id": "alice", "amount": 10.5}, {"user_id": "bob", "amount": 21.0}]
    assert settle_body["final_balance"] == 31.5


def test_gateway_ledger_unreachable_raises() -> None:
    async def _run():
        ledger = GatewayLedger(LOG, "http://127.0.0.1:9", timeout_seconds=2)
        await ledger.initialize()
        try:
            with pytest.raises(ExternalServiceError):
                await ledger.fetch_run("r1")
        finally:
            await ledger.close_adapter()

    asyncio.run(_run())
