import asyncio
import json
import time
from dataclasses import replace

import pytest
from aiohttp.test_utils import TestClient, TestServer

import db_manager
from borrower_registry import BorrowerRegistry
from chain_registry import ChainRegistry, TransientRPCError
from engine import LiquidationEngine, legacy_market_maps
from health_server import build_app
from liquidation_executor import ExecutionStatus
from models import Protocol

from conftest import (CHAIN_CONFIG, COMET, COMET_USDC, COMPTROLLER, POOL, account_data, account_liquidity,
                      FakeChainContext, address, make_candidate, ok, uint)

BORROWER = address(0xBEEF)


def make_engine(ctx, settings, notifier, borrowers=None, **kwargs):
    registry = ChainRegistry({ctx.name: ctx}, errors={"ghost": "missing GHOST_RPC_URL"})
    return LiquidationEngine(settings, registry, borrowers or BorrowerRegistry(), notifier, **kwargs)


class TestScan:
    async def test_liquidatable_borrower_is_executed(self, signer_ctx, settings, notifier, stats):
        borrowers = BorrowerRegistry()
        borrowers.add_borrowers("testnet", Protocol.RESERVE_POOL, POOL, [BORROWER])
        engine = make_engine(signer_ctx, settings, notifier, borrowers, stats=stats)
        signer_ctx.responses.extend([
            [ok(account_data(5000, 4000, 0.95))],
            [ok(uint(25 * 10 ** 17)), ok(uint(0)), ok(uint(0)), ok(uint(4000 * 10 ** 6))],
        ])

        result = await engine.scan_chain("testnet", "oracle ETH/USD")
        await engine.drain_executions()

        assert len(result.liquidatable) == 1
        assert len(signer_ctx.submitted) == 1
        assert stats["cycles"] == 1
        assert stats["succeeded"] == 1

    async def test_bad_debt_borrower_is_never_executed(self, signer_ctx, settings, notifier, stats):
        borrowers = BorrowerRegistry()
        borrowers.add_borrowers("testnet", Protocol.COMPTROLLER, COMPTROLLER, [BORROWER])
        engine = make_engine(signer_ctx, settings, notifier, borrowers, stats=stats)
        signer_ctx.responder = lambda calls: [ok(account_liquidity(0, 0, 10_000 * 10 ** 18))] * len(calls)
        signer_ctx.responses.extend([
            [ok(account_liquidity(0, 0, 10_000 * 10 ** 18))],
            [ok(uint(0)), ok(uint(10 ** 18)), ok(uint(10 ** 18))] * 2,
        ])

        await engine.scan_chain("testnet", "periodic")
        await engine.scan_chain("testnet", "periodic")
        await engine.drain_executions()

        assert stats["bad_debt"] == 1
        assert stats["attempted"] == 0
        assert signer_ctx.submitted == []
        # Second cycle: one position read, no collateral re-check
        assert len(signer_ctx.calls) == 3

    async def test_transport_failure_is_counted(self, ctx, settings, notifier, stats):
        borrowers = BorrowerRegistry()
        borrowers.add_borrowers("testnet", Protocol.RESERVE_POOL, POOL, [BORROWER])
        engine = make_engine(ctx, settings, notifier, borrowers, stats=stats)
        ctx.responses.append(TransientRPCError("reset"))

        with pytest.raises(TransientRPCError):
            await engine.scan_chain("testnet", "periodic")
        assert stats["transient_errors"] == 1

    async def test_positions_are_persisted(self, ctx, settings, notifier, tmp_path, monkeypatch):
        monkeypatch.setattr(db_manager, "DB_FILE", str(tmp_path / "engine.db"))
        db_manager.init_db()
        borrowers = BorrowerRegistry()
        borrowers.add_borrowers("testnet", Protocol.RESERVE_POOL, POOL, [BORROWER])
        engine = make_engine(ctx, replace(settings, execution_enabled=False), notifier, borrowers, db_enabled=True)
        ctx.responses.append([ok(account_data(5000, 1000, 2.0))])

        await engine.scan_chain("testnet", "periodic")
        await engine.drain_writes()

        conn = db_manager.get_connection()
        rows = conn.execute("SELECT borrower FROM positions").fetchall()
        conn.close()
        assert [r["borrower"] for r in rows] == [BORROWER]
        assert not engine._writes

    async def test_bad_debt_write_lands_before_shutdown(self, signer_ctx, settings, notifier, monkeypatch):
        written = []

        def slow_record(record):
            time.sleep(0.05)
            written.append(record.borrower)

        monkeypatch.setattr(db_manager, "record_bad_debt", slow_record)
        monkeypatch.setattr(db_manager, "update_positions", lambda positions: None)
        monkeypatch.setattr(db_manager, "log_system_metric", lambda *args: None)
        borrowers = BorrowerRegistry()
        borrowers.add_borrowers("testnet", Protocol.COMPTROLLER, COMPTROLLER, [BORROWER])
        engine = make_engine(signer_ctx, settings, notifier, borrowers, db_enabled=True)
        signer_ctx.responses.extend([
            [ok(account_liquidity(0, 0, 10_000 * 10 ** 18))],
            [ok(uint(0)), ok(uint(10 ** 18)), ok(uint(10 ** 18))] * 2,
        ])

        await engine.scan_chain("testnet", "periodic")
        assert len(engine._writes) == 3
        await engine.drain_writes()

        assert written == [BORROWER]
        assert not engine._writes


class TestDiscovery:
    async def test_new_borrowers_are_saved(self, ctx, settings, notifier, tmp_path):
        borrowers = BorrowerRegistry(str(tmp_path / "borrowers.json"))
        engine = make_engine(ctx, replace(settings, discovery_lookback=100), notifier, borrowers)
        ctx.logs = [{"blockNumber": 9950, "topics": ["0x00", "0x00", "0x" + "00" * 12 + BORROWER[2:].lower()]}]

        added = await engine.discover_once()

        assert added == 1
        assert borrowers.borrowers("testnet", Protocol.RESERVE_POOL, POOL) == [BORROWER]
        assert (tmp_path / "borrowers.json").exists()
        assert notifier.sent[-1][0] == "🔍 Borrower discovery"


class TestLifecycle:
    def test_legacy_market_maps(self):
        pools, comets = legacy_market_maps({"testnet": CHAIN_CONFIG})
        assert pools == {"testnet": POOL}
        assert comets == {"testnet": {COMET_USDC.symbol: COMET}}

    async def test_locks_reseeded_from_journal(self, signer_ctx, settings, notifier, monkeypatch):
        monkeypatch.setattr(db_manager, "pending_executions",
                            lambda max_age: [{"chain": "testnet", "borrower": BORROWER, "created_at": time.time()}])
        engine = make_engine(signer_ctx, settings, notifier)

        await engine.reseed_locks()

        assert engine.executor.lock is engine.lock
        assert engine.lock.held(("testnet", BORROWER.lower()))
        assert engine.health_status()["locks"] == 1

        adapter = engine.adapter_map("testnet")[(Protocol.RESERVE_POOL, POOL)]
        outcome = await engine.executor.execute(signer_ctx, adapter, make_candidate(borrower=BORROWER))
        assert outcome.status == ExecutionStatus.LOCKED
        assert signer_ctx.submitted == []

    async def test_health_endpoint(self, ctx, settings, notifier):
        engine = make_engine(ctx, settings, notifier)

        async with TestClient(TestServer(build_app(engine))) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = json.loads(await resp.text())

        assert body["status"] == "ok"
        assert body["chains"]["testnet"]["state"] == "idle"
        assert body["excluded_chains"] == {"ghost": "missing GHOST_RPC_URL"}
        assert body["stats"]["cycles"] == 0

    async def test_run_scans_on_startup_and_stops(self, settings, notifier):
        ctx = FakeChainContext(replace(CHAIN_CONFIG, price_feeds=()))
        borrowers = BorrowerRegistry()
        borrowers.add_borrowers("testnet", Protocol.RESERVE_POOL, POOL, [BORROWER])
        engine = make_engine(ctx, replace(settings, scan_interval=3600, discovery_interval=3600), notifier, borrowers)
        ctx.responder = lambda calls: [ok(account_data(5000, 1000, 2.0))] * len(calls)

        task = asyncio.ensure_future(engine.run())
        loop = engine.scheduler.loops["testnet"]
        for _ in range(200):
            if loop.scans:
                break
            await asyncio.sleep(0.01)
        engine.stop()
        await asyncio.wait_for(task, timeout=2)

        assert loop.scans == 1
        assert notifier.sent[0][0].startswith("🚀 LIQUIDATOR STARTED")
