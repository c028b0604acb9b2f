import time
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from web3.exceptions import TimeExhausted

import db_manager
from chain_registry import ChainContext
from config import EngineSettings
from models import LiquidationCandidate, Stats
from protocol_adapters import ProtocolAdapter

logger = logging.getLogger("Liquidator")

# Share of collateral a single call can realistically seize
COLLATERAL_HAIRCUT = 0.9


class ExecutionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REVERTED = "reverted"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNPROFITABLE = "unprofitable"
    REJECTED = "rejected"
    DRY_RUN = "dry_run"
    LOCKED = "locked"
    SKIPPED = "skipped"


@dataclass
class ProfitEstimate:
    debt_to_cover: int
    repay_usd: float
    collateral_received_usd: float
    gross_usd: float
    flash_fee_usd: float
    gas_gwei: float
    gas_usd: float
    net_usd: float
    slippage: Optional[float] = None


@dataclass
class ExecutionOutcome:
    status: ExecutionStatus
    candidate: LiquidationCandidate
    reason: str = ""
    tx_hash: Optional[str] = None
    estimate: Optional[ProfitEstimate] = None


def estimate_profit(candidate: LiquidationCandidate, bonus: float, close_factor: float,
                    debt_to_cover: int, flash_fee: float, gas_limit: int, gas_gwei: float,
                    native_price: float) -> ProfitEstimate:
    repay = min(candidate.debt.value_usd * close_factor, candidate.collateral.value_usd * COLLATERAL_HAIRCUT)
    received = repay * (1 + bonus)
    gross = received - repay
    fee = repay * flash_fee
    gas_usd = gas_limit * gas_gwei * 1e-9 * native_price
    return ProfitEstimate(
        debt_to_cover=debt_to_cover,
        repay_usd=repay,
        collateral_received_usd=received,
        gross_usd=gross,
        flash_fee_usd=fee,
        gas_gwei=gas_gwei,
        gas_usd=gas_usd,
        net_usd=gross - fee - gas_usd,
    )


class ExecutionLock:
    """
    (chain, borrower) keys with an in-flight liquidation. A running attempt
    holds its key until it releases it with its token; keys restored from the
    attempt journal expire after `expiry` seconds.
    """

    def __init__(self, expiry: float = 120.0, clock: Callable[[], float] = time.time):
        self.expiry = expiry
        self.clock = clock
        self._held: Dict[Tuple[str, str], Tuple[float, Optional[object]]] = {}

    def _live(self, key: Tuple[str, str], now: float) -> bool:
        entry = self._held.get(key)
        if entry is None:
            return False
        taken_at, token = entry
        return token is not None or now - taken_at < self.expiry

    def acquire(self, key: Tuple[str, str]) -> Optional[object]:
        """Takes the key if free and returns the owner token, None if held. Never awaits."""
        now = self.clock()
        if self._live(key, now):
            return None
        if key in self._held:
            logger.info(f"🔓 Restored execution lock on {key} expired, taking over")
        token = object()
        self._held[key] = (now, token)
        return token

    def release(self, key: Tuple[str, str], token: object):
        """Drops the key only while `token` still owns it."""
        entry = self._held.get(key)
        if entry is not None and entry[1] is token:
            del self._held[key]

    def held(self, key: Tuple[str, str]) -> bool:
        return self._live(key, self.clock())

    def seed(self, key: Tuple[str, str], taken_at: float):
        """Restores a lock recorded before a restart."""
        if key not in self._held and self.clock() - taken_at < self.expiry:
            self._held[key] = (taken_at, None)

    def __len__(self):
        now = self.clock()
        return sum(1 for key in list(self._held) if self._live(key, now))


class CircuitBreaker:
    def __init__(self, threshold: int = 5, cooldown: float = 300.0, clock: Callable[[], float] = time.time):
        self.threshold = threshold
        self.cooldown = cooldown
        self.clock = clock
        self.consecutive_failures = 0
        self.open_until: Optional[float] = None

    def is_open(self) -> bool:
        if self.open_until is None:
            return False
        if self.clock() >= self.open_until:
            self.open_until = None
            self.consecutive_failures = 0
            logger.info("🟢 Circuit breaker CLOSED")
            return False
        return True

    def record_failure(self):
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold and self.open_until is None:
            self.open_until = self.clock() + self.cooldown
            logger.warning(f"🔴 Circuit breaker OPEN - {self.consecutive_failures} consecutive failures")

    def record_success(self):
        self.consecutive_failures = 0


class LiquidationExecutor:
    def __init__(self, settings: EngineSettings, stats: Stats, notifier=None,
                 lock: Optional[ExecutionLock] = None, db_enabled: bool = False):
        self.settings = settings
        self.stats = stats
        self.notifier = notifier
        self.lock = lock if lock is not None else ExecutionLock(settings.lock_expiry)
        self.db_enabled = db_enabled
        self.breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, chain: str) -> CircuitBreaker:
        if chain not in self.breakers:
            self.breakers[chain] = CircuitBreaker()
        return self.breakers[chain]

    def _notify(self, title: str, body: str, urgent: bool = False):
        if self.notifier:
            self.notifier.notify(title, body, urgent=urgent)

    # --- gate ---

    async def estimate(self, ctx: ChainContext, adapter: ProtocolAdapter,
                       candidate: LiquidationCandidate) -> ProfitEstimate:
        gas_gwei = await ctx.gas_price_gwei()
        return estimate_profit(
            candidate,
            bonus=adapter.bonus,
            close_factor=adapter.close_factor,
            debt_to_cover=adapter.debt_to_cover(candidate),
            flash_fee=self.settings.flash_loan_fee,
            gas_limit=ctx.config.gas_limit,
            gas_gwei=gas_gwei,
            native_price=ctx.native_price(),
        )

    async def swap_slippage(self, ctx: ChainContext, candidate: LiquidationCandidate,
                            estimate: ProfitEstimate) -> Optional[float]:
        """
        Loss from swapping the seized collateral back into the debt asset, versus
        oracle value. None when the chain has no quoter; 1.0 when no pool quotes.
        """
        collateral, debt = candidate.collateral.asset, candidate.debt.asset
        if collateral.token.lower() == debt.token.lower():
            return 0.0
        if not ctx.config.quoter_address:
            return None
        collateral_price = ctx.price_of(collateral)
        if collateral_price <= 0 or estimate.collateral_received_usd <= 0:
            return None
        amount_in = int(estimate.collateral_received_usd / collateral_price * 10 ** collateral.decimals)
        quoted = await ctx.quote_swap(collateral.token, debt.token, amount_in)
        if not quoted:
            return 1.0
        out_usd = quoted / 10 ** debt.decimals * ctx.price_of(debt)
        return max(0.0, 1 - out_usd / estimate.collateral_received_usd)

    def check_gate(self, ctx: ChainContext, estimate: ProfitEstimate) -> Optional[Tuple[ExecutionStatus, str]]:
        if estimate.net_usd < self.settings.min_profit_usd:
            return ExecutionStatus.UNPROFITABLE, f"net ${estimate.net_usd:.2f} < min ${self.settings.min_profit_usd:.2f}"
        if estimate.gas_gwei > ctx.config.max_gas_gwei:
            return ExecutionStatus.REJECTED, f"gas {estimate.gas_gwei:.4f} gwei > max {ctx.config.max_gas_gwei} gwei"
        if estimate.slippage is not None and estimate.slippage > self.settings.max_slippage:
            return ExecutionStatus.REJECTED, f"slippage {estimate.slippage:.2%} > max {self.settings.max_slippage:.2%}"
        return None

    # --- execution ---

    async def execute(self, ctx: ChainContext, adapter: ProtocolAdapter,
                      candidate: LiquidationCandidate) -> ExecutionOutcome:
        label = f"{ctx.name} {candidate.protocol.value} {candidate.borrower}"

        liquidator = ctx.liquidator_for(candidate.protocol)
        if not liquidator:
            logger.warning(f"⚠️ No {candidate.protocol.value} liquidator for {ctx.name}, skipping {candidate.borrower}")
            return ExecutionOutcome(ExecutionStatus.SKIPPED, candidate, "no liquidator configured")
        if self.breaker(ctx.name).is_open():
            logger.warning(f"🔴 [{ctx.name}] Circuit open, skipping {candidate.borrower}")
            return ExecutionOutcome(ExecutionStatus.SKIPPED, candidate, "circuit breaker open")

        estimate = await self.estimate(ctx, adapter, candidate)
        rejection = self.check_gate(ctx, estimate)
        if rejection is None:
            estimate.slippage = await self.swap_slippage(ctx, candidate, estimate)
            rejection = self.check_gate(ctx, estimate)

        if rejection is not None:
            status, reason = rejection
            if status == ExecutionStatus.UNPROFITABLE:
                self.stats.incr("skipped_unprofitable")
                logger.info(f"   📊 UNPROFITABLE: {label} | Gross: ${estimate.gross_usd:.2f} | Gas: ${estimate.gas_usd:.2f} | Net: ${estimate.net_usd:.2f}")
            else:
                self.stats.incr("rejected")
                logger.info(f"   🚫 REJECTED: {label} | {reason}")
            return ExecutionOutcome(status, candidate, reason, estimate=estimate)

        logger.info(
            f"   📊 PROFITABLE: {label} | Collateral: {candidate.collateral.asset.symbol} | "
            f"Debt: {candidate.debt.asset.symbol} | Cover: {estimate.debt_to_cover} | Net: ${estimate.net_usd:.2f}"
        )

        if not self.settings.execution_enabled:
            logger.info(f"   🧪 DRY RUN: would liquidate {label} for ~${estimate.net_usd:.2f}")
            return ExecutionOutcome(ExecutionStatus.DRY_RUN, candidate, "execution disabled", estimate=estimate)

        token = self.lock.acquire(candidate.lock_key)
        if token is None:
            logger.debug(f"[{ctx.name}] {candidate.borrower} already being liquidated")
            return ExecutionOutcome(ExecutionStatus.LOCKED, candidate, estimate=estimate)
        try:
            return await self._submit(ctx, adapter, candidate, liquidator, estimate, label)
        finally:
            self.lock.release(candidate.lock_key, token)

    async def _submit(self, ctx, adapter, candidate, liquidator, estimate, label) -> ExecutionOutcome:
        self.stats.incr("attempted")
        attempt_id = await self._journal_start(candidate, estimate)
        logger.info(f"   🔥 EXECUTING: {label} | Expected Profit: ${estimate.net_usd:.2f}")

        tx_func = adapter.build_liquidation_call(ctx, liquidator, candidate, estimate.debt_to_cover)

        revert = await ctx.simulate(tx_func)
        if revert is not None:
            return await self._failed(ctx, candidate, estimate, attempt_id, ExecutionStatus.FAILED,
                                      f"pre-flight revert: {revert}", label)

        try:
            tx_hash = await asyncio.wait_for(ctx.submit(tx_func), timeout=self.settings.rpc_timeout)
        except asyncio.TimeoutError:
            return await self._failed(ctx, candidate, estimate, attempt_id, ExecutionStatus.TIMEOUT,
                                      "submission timed out", label)
        except Exception as e:
            return await self._failed(ctx, candidate, estimate, attempt_id, ExecutionStatus.FAILED,
                                      f"send failed: {e}", label)

        logger.info(f"   ⏳ TX: {tx_hash}")
        try:
            receipt = await ctx.wait_for_receipt(tx_hash, self.settings.confirm_timeout)
        except (TimeExhausted, asyncio.TimeoutError):
            return await self._failed(ctx, candidate, estimate, attempt_id, ExecutionStatus.TIMEOUT,
                                      f"no receipt after {self.settings.confirm_timeout:.0f}s", label, tx_hash)
        except Exception as e:
            return await self._failed(ctx, candidate, estimate, attempt_id, ExecutionStatus.FAILED,
                                      f"receipt error: {e}", label, tx_hash)

        if receipt['status'] != 1:
            return await self._failed(ctx, candidate, estimate, attempt_id, ExecutionStatus.REVERTED,
                                      "transaction reverted", label, tx_hash)

        self.stats.incr("succeeded")
        self.breaker(ctx.name).record_success()
        await self._journal_finish(attempt_id, ExecutionStatus.SUCCEEDED, tx_hash, "")
        logger.info(f"   ✅ SUCCESS! {label} | Gas used: {receipt.get('gasUsed')}")
        self._notify(
            f"✅ {candidate.protocol.value.upper()} LIQUIDATION",
            f"{ctx.name}\n{candidate.borrower}\nDebt covered: {estimate.debt_to_cover} {candidate.debt.asset.symbol}\n"
            f"Profit: ~${estimate.net_usd:.2f}\nTX: {ctx.config.explorer}{tx_hash}",
            urgent=True,
        )
        return ExecutionOutcome(ExecutionStatus.SUCCEEDED, candidate, tx_hash=tx_hash, estimate=estimate)

    async def _failed(self, ctx, candidate, estimate, attempt_id, status, reason, label, tx_hash=None):
        self.stats.incr("failed")
        self.breaker(ctx.name).record_failure()
        await self._journal_finish(attempt_id, status, tx_hash, reason)
        logger.error(f"   ❌ {status.value.upper()}: {label} | {reason}")
        link = f"\nTX: {ctx.config.explorer}{tx_hash}" if tx_hash else ""
        self._notify(f"❌ Liquidation {status.value}", f"{label}\n{reason}{link}", urgent=False)
        return ExecutionOutcome(status, candidate, reason, tx_hash=tx_hash, estimate=estimate)

    # --- journal ---

    async def _journal_start(self, candidate: LiquidationCandidate, estimate: ProfitEstimate) -> Optional[int]:
        if not self.db_enabled:
            return None
        return await asyncio.to_thread(
            db_manager.record_execution_start,
            candidate.chain, candidate.protocol.value, candidate.borrower,
            candidate.collateral.asset.symbol, candidate.debt.asset.symbol,
            str(estimate.debt_to_cover), estimate.net_usd,
        )

    async def _journal_finish(self, attempt_id, status, tx_hash, reason):
        if not self.db_enabled or attempt_id is None:
            return
        await asyncio.to_thread(db_manager.finish_execution, attempt_id, status.value, tx_hash, reason)
