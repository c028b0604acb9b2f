import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from borrower_registry import BorrowerRegistry
from chain_registry import ChainContext
from models import Position, Stats
from protocol_adapters import ProtocolAdapter

logger = logging.getLogger("Liquidator")


@dataclass
class ScanResult:
    chain: str
    positions: List[Position] = field(default_factory=list)
    aggregate_calls: int = 0
    borrowers: int = 0
    below_min_debt: int = 0
    elapsed_ms: float = 0.0

    @property
    def liquidatable(self) -> List[Position]:
        return [p for p in self.positions if p.liquidatable]


class BatchedPositionEvaluator:
    """
    Reads every known borrower of a chain with one Multicall3 round trip per
    protocol group (per `batch_size` borrowers).

    A transport failure raises TransientRPCError out of `evaluate_chain`, which
    aborts the chain's cycle. Decode failures stay inside the adapter.
    """

    def __init__(self, registry: BorrowerRegistry, stats: Stats,
                 batch_size: int = 500, min_debt_usd: float = 100.0):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.registry = registry
        self.stats = stats
        self.batch_size = batch_size
        self.min_debt_usd = min_debt_usd
        # Latest view per position key; entries are updated, never deleted
        self.positions: Dict[tuple, Position] = {}

    def _chunks(self, borrowers: Sequence[str]):
        for i in range(0, len(borrowers), self.batch_size):
            yield borrowers[i:i + self.batch_size]

    async def evaluate_group(self, ctx: ChainContext, adapter: ProtocolAdapter,
                             borrowers: Sequence[str], result: ScanResult):
        for chunk in self._chunks(list(borrowers)):
            positions = await adapter.evaluate(ctx, chunk)
            result.aggregate_calls += 1
            for position in positions:
                self.positions[position.key] = position
                if position.debt_usd is not None and position.debt_usd < self.min_debt_usd:
                    result.below_min_debt += 1
                    continue
                result.positions.append(position)

    async def evaluate_chain(self, ctx: ChainContext, adapters: Sequence[ProtocolAdapter]) -> ScanResult:
        start_time = time.time()
        self.stats.incr("cycles")
        result = ScanResult(chain=ctx.name)

        for adapter in adapters:
            borrowers = self.registry.borrowers(ctx.name, adapter.protocol, adapter.market)
            if not borrowers:
                continue
            result.borrowers += len(borrowers)
            await self.evaluate_group(ctx, adapter, borrowers, result)

        result.elapsed_ms = (time.time() - start_time) * 1000
        if result.borrowers:
            logger.info(
                f"🔭 [{ctx.name}] {result.borrowers} borrowers | {len(result.positions)} positions | "
                f"{len(result.liquidatable)} liquidatable | {result.aggregate_calls} multicall(s) | "
                f"{result.elapsed_ms:.0f}ms"
            )
        return result
