import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from chain_registry import ChainContext, TransientRPCError
from models import BadDebtRecord, LiquidationCandidate, Position, Protocol, Stats
from protocol_adapters import ProtocolAdapter

logger = logging.getLogger("Liquidator")

BadDebtKey = Tuple[str, str, str]


def bad_debt_key(chain: str, protocol: Protocol, borrower: str) -> BadDebtKey:
    return (chain, Protocol(protocol).value, borrower.lower())


class BadDebtFilter:
    """
    Confirms seizable collateral before a liquidation signal is trusted.

    Borrowers with a signal but no collateral anywhere are recorded once and
    excluded for the life of the process (or until `clear`).
    """

    def __init__(self, stats: Stats, notifier=None,
                 recorder: Optional[Callable[[BadDebtRecord], None]] = None):
        self.stats = stats
        self.notifier = notifier
        self.recorder = recorder
        self.records: Dict[BadDebtKey, BadDebtRecord] = {}

    def is_bad_debt(self, chain: str, protocol: Protocol, borrower: str) -> bool:
        return bad_debt_key(chain, protocol, borrower) in self.records

    def clear(self, key: Optional[BadDebtKey] = None) -> int:
        """Forgets one record, or all of them when no key is given."""
        if key is None:
            count = len(self.records)
            self.records.clear()
            return count
        return 1 if self.records.pop(key, None) else 0

    def _record(self, position: Position):
        record = BadDebtRecord(
            chain=position.chain,
            protocol=position.protocol,
            borrower=position.borrower,
            debt_usd=position.debt_usd if position.debt_usd is not None else position.shortfall,
        )
        self.records[record.key] = record
        self.stats.incr("bad_debt")

        debt_text = f"${record.debt_usd:,.0f}" if record.debt_usd is not None else "unknown"
        logger.info(f"🪦 BAD DEBT: {position.chain} {position.protocol.value} {position.borrower} | debt {debt_text} | {position.signal}")
        if self.notifier:
            self.notifier.notify(
                "Bad debt detected",
                f"{position.chain} {position.protocol.value}\n{position.borrower}\nDebt: {debt_text}\n{position.signal}",
                urgent=False,
            )
        if self.recorder:
            self.recorder(record)

    async def classify(self, ctx: ChainContext, adapter: ProtocolAdapter,
                       position: Position) -> Optional[LiquidationCandidate]:
        """Returns a candidate, or None when healthy, bad debt, or unverifiable this cycle."""
        if not position.liquidatable:
            return None
        if self.is_bad_debt(position.chain, position.protocol, position.borrower):
            return None

        try:
            report = await adapter.verify_collateral(ctx, position.borrower)
        except TransientRPCError as e:
            logger.warning(f"⚠️ [{ctx.name}] Collateral check skipped for {position.borrower}: {e}")
            return None

        if not report.has_collateral:
            if not report.verified:
                logger.info(f"❔ [{ctx.name}] Collateral of {position.borrower} unverifiable this cycle ({report.failed_calls} failed reads)")
                return None
            self._record(position)
            return None

        collateral = report.dominant_collateral()
        debt = report.dominant_debt()
        if debt is None:
            logger.info(f"❔ [{ctx.name}] No debt balance found for {position.borrower}, skipping")
            return None

        return LiquidationCandidate(position=position, collateral=collateral, debt=debt)

    async def filter(self, ctx: ChainContext, adapters: Mapping[Tuple[Protocol, str], ProtocolAdapter],
                     positions: Sequence[Position]) -> List[LiquidationCandidate]:
        candidates = []
        for position in positions:
            adapter = adapters.get((position.protocol, position.market))
            if adapter is None:
                continue
            candidate = await self.classify(ctx, adapter, position)
            if candidate is not None:
                candidates.append(candidate)
        return candidates
