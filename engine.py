import time
import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

import db_manager
from bad_debt_filter import BadDebtFilter
from borrower_registry import BorrowerDiscovery, BorrowerRegistry
from chain_registry import ChainContext, ChainRegistry, TransientRPCError
from config import ChainConfig, EngineSettings
from health_server import start_health_server
from liquidation_executor import ExecutionLock, ExecutionOutcome, LiquidationExecutor
from models import LiquidationCandidate, Protocol, Stats
from position_evaluator import BatchedPositionEvaluator, ScanResult
from protocol_adapters import ProtocolAdapter, adapters_for
from trigger_scheduler import OracleListener, TriggerScheduler

logger = logging.getLogger("Liquidator")


def legacy_market_maps(configs: Dict[str, ChainConfig]):
    """Market lookups for the legacy borrower files: reserve pool per chain, comet per base symbol."""
    pools, comets = {}, {}
    for name, cfg in configs.items():
        for proto in cfg.protocols:
            if proto.protocol == Protocol.RESERVE_POOL:
                pools.setdefault(name, proto.market)
            elif proto.protocol == Protocol.MARKET and proto.base_asset:
                comets.setdefault(name, {})[proto.base_asset.symbol] = proto.market
    return pools, comets


class LiquidationEngine:
    """
    Owns every piece of shared state (registries, bad-debt cache, locks,
    stats) and wires the pipeline: evaluate -> filter -> execute.
    """

    def __init__(self, settings: EngineSettings, registry: ChainRegistry, borrowers: BorrowerRegistry,
                 notifier=None, stats: Optional[Stats] = None, db_enabled: bool = False):
        self.settings = settings
        self.registry = registry
        self.borrowers = borrowers
        self.notifier = notifier
        self.stats = stats or Stats()
        self.db_enabled = db_enabled

        self.adapters: Dict[str, List[ProtocolAdapter]] = {ctx.name: adapters_for(ctx) for ctx in registry}
        self.evaluator = BatchedPositionEvaluator(borrowers, self.stats, settings.batch_size, settings.min_debt_usd)
        self.bad_debt = BadDebtFilter(self.stats, notifier,
                                      recorder=self._record_bad_debt if db_enabled else None)
        self.lock = ExecutionLock(settings.lock_expiry)
        self.executor = LiquidationExecutor(settings, self.stats, notifier, self.lock, db_enabled)
        self.discovery = BorrowerDiscovery(borrowers, self.stats, settings.discovery_lookback, settings.discovery_chunk)

        self.scheduler = TriggerScheduler(self.scan_chain, settings.scan_interval,
                                          settings.scan_timeout, settings.max_backoff)
        for ctx in registry:
            self.scheduler.add_chain(ctx.name)
        self.oracles: Dict[str, OracleListener] = {
            ctx.name: OracleListener(ctx, self.scheduler, self.stats)
            for ctx in registry if ctx.config.price_feeds
        }

        self.stop_event = asyncio.Event()
        self._executions: Set[asyncio.Task] = set()
        self._writes: Set[asyncio.Task] = set()

    def adapter_map(self, chain: str) -> Dict[Tuple[Protocol, str], ProtocolAdapter]:
        return {(a.protocol, a.market): a for a in self.adapters.get(chain, [])}

    async def log_system(self, msg: str, level: str = "info"):
        if level == "error":
            logger.error(msg)
        elif level == "warning":
            logger.warning(msg)
        else:
            logger.info(msg)

        if self.db_enabled:
            await asyncio.to_thread(db_manager.log_event, level, msg)

        if self.notifier and level in ("success", "error"):
            self.notifier.notify(msg.split("\n", 1)[0], msg, urgent=level == "success")

    # --- pipeline ---

    async def scan_chain(self, chain: str, reason: str = "manual") -> ScanResult:
        ctx = self.registry.get(chain)
        try:
            result = await self.evaluator.evaluate_chain(ctx, self.adapters[chain])
        except TransientRPCError:
            self.stats.incr("transient_errors")
            raise

        candidates = await self.bad_debt.filter(ctx, self.adapter_map(chain), result.liquidatable)
        if candidates:
            logger.info(f"🔥 [{chain}] {len(candidates)} LIQUIDATABLE ({reason})")
        for candidate in candidates:
            self.dispatch(ctx, candidate)

        self._persist(result)
        return result

    def dispatch(self, ctx: ChainContext, candidate: LiquidationCandidate) -> asyncio.Task:
        """Runs the executor detached so confirmations never block the chain's scanner."""
        adapter = self.adapter_map(ctx.name)[(candidate.protocol, candidate.position.market)]
        task = asyncio.ensure_future(self._execute(ctx, adapter, candidate))
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)
        return task

    async def _execute(self, ctx, adapter, candidate) -> Optional[ExecutionOutcome]:
        try:
            return await self.executor.execute(ctx, adapter, candidate)
        except Exception as e:
            logger.error(f"❌ [{ctx.name}] Executor error for {candidate.borrower}: {e}")
            return None

    async def drain_executions(self):
        if self._executions:
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    def _write(self, func, *args) -> asyncio.Task:
        """Runs a blocking db_manager write off the loop, tracked until it lands."""
        task = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        return task

    async def drain_writes(self):
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def _record_bad_debt(self, record):
        self._write(db_manager.record_bad_debt, record)

    def _persist(self, result: ScanResult):
        if not self.db_enabled or not result.borrowers:
            return
        self._write(db_manager.update_positions, result.positions)
        self._write(db_manager.log_system_metric, result.chain, result.borrowers,
                    len(result.positions), len(result.liquidatable), result.elapsed_ms)

    # --- discovery ---

    async def discover_once(self) -> int:
        added = 0
        for ctx in self.registry:
            for adapter in self.adapters[ctx.name]:
                try:
                    added += await self.discovery.discover(ctx, adapter)
                except TransientRPCError as e:
                    logger.warning(f"⚠️ [{ctx.name}] Discovery skipped: {e}")
        if self.borrowers.dirty:
            try:
                await self.borrowers.save()
                logger.info(f"💾 Saved {self.borrowers.count()} borrowers to {self.borrowers.path}")
            except OSError as e:
                logger.error(f"❌ Failed to save borrowers: {e}")
        if added and self.notifier:
            summary = "\n".join(f"{c}: {self.borrowers.count(c)}" for c in self.borrowers.chains())
            self.notifier.notify("🔍 Borrower discovery", f"+{added} new\n{summary}")
        return added

    async def _wait_stop(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _discovery_loop(self):
        while not self.stop_event.is_set():
            await self.discover_once()
            if await self._wait_stop(self.settings.discovery_interval):
                break

    async def _stats_loop(self):
        while not await self._wait_stop(self.settings.stats_interval):
            logger.info(f"📈 {self.stats.summary()}")

    # --- lifecycle ---

    async def reseed_locks(self):
        """Re-takes locks for attempts that were pending when the process last stopped."""
        rows = await asyncio.to_thread(db_manager.pending_executions, self.settings.lock_expiry)
        for row in rows:
            self.lock.seed((row["chain"], row["borrower"].lower()), row["created_at"])
        if rows:
            logger.warning(f"🔒 Re-seeded {len(rows)} execution lock(s) from unfinished attempts")

    def health_status(self) -> dict:
        chains = {}
        for chain, state in self.scheduler.states().items():
            ctx = self.registry.get(chain)
            oracle = self.oracles.get(chain)
            chains[chain] = dict(
                state,
                borrowers=self.borrowers.count(chain),
                oracle_connected=bool(oracle and oracle.connected),
                circuit_open=self.executor.breaker(chain).is_open(),
                native_price=ctx.native_price(),
            )
        return {
            "status": "ok" if chains else "degraded",
            "uptime_s": round(time.time() - self.stats.started_at),
            "execution_enabled": self.settings.execution_enabled,
            "stats": self.stats.snapshot(),
            "chains": chains,
            "excluded_chains": dict(self.registry.errors),
            "bad_debt": len(self.bad_debt.records),
            "locks": len(self.lock),
        }

    def stop(self):
        self.stop_event.set()

    async def run(self):
        if self.db_enabled:
            await asyncio.to_thread(db_manager.init_db)
            await self.reseed_locks()

        runner = None
        if self.settings.health_port:
            try:
                runner = await start_health_server(self, self.settings.health_port)
            except OSError as e:
                logger.warning(f"⚠️ Health endpoint unavailable: {e}")

        tasks = [
            asyncio.ensure_future(self.scheduler.run(self.stop_event)),
            asyncio.ensure_future(self._discovery_loop()),
            asyncio.ensure_future(self._stats_loop()),
        ]
        tasks += [asyncio.ensure_future(o.run(self.stop_event)) for o in self.oracles.values()]
        for chain in self.scheduler.loops:
            self.scheduler.trigger(chain, "startup")

        mode = "LIVE" if self.settings.execution_enabled else "DRY RUN"
        await self.log_system(
            f"🚀 LIQUIDATOR STARTED ({mode})\nChains: {', '.join(self.registry.names())}\n"
            f"Borrowers: {self.borrowers.count()} | Min profit: ${self.settings.min_profit_usd}",
            "success",
        )

        try:
            await self.stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.drain_executions()
            await self.drain_writes()
            if self.borrowers.dirty:
                await self.borrowers.save()
            if self.notifier:
                await self.notifier.drain()
            if runner is not None:
                await runner.cleanup()
            for ctx in self.registry:
                await ctx.rpc.close()
            logger.info(f"🛑 Engine stopped. {self.stats.summary()}")
