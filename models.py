"""
Shared value types for the liquidation engine: protocol tags, asset tables,
positions, candidates and the process-wide counters.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

# (target, allowFailure, callData) as consumed by Multicall3.aggregate3
Call = Tuple[str, bool, bytes]
# (success, returnData) as produced by Multicall3.aggregate3
CallResult = Tuple[bool, bytes]


class Protocol(str, Enum):
    RESERVE_POOL = "aave"
    MARKET = "compound"
    COMPTROLLER = "venus"


@dataclass(frozen=True)
class AssetInfo:
    """One row of a protocol's asset table.

    `collateral_token` is where a borrower's seizable balance is held (aToken,
    vToken, or the underlying itself for comet collateral). `debt_token` is
    where the debt balance is read, when the protocol has one per asset.
    """
    symbol: str
    token: str
    collateral_token: str
    debt_token: Optional[str]
    decimals: int
    price_usd: float


@dataclass
class Position:
    chain: str
    protocol: Protocol
    market: str
    borrower: str
    liquidatable: bool
    collateral_usd: Optional[float] = None
    debt_usd: Optional[float] = None
    health_factor: Optional[float] = None
    shortfall: Optional[float] = None
    evaluated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.chain, self.protocol.value, self.market, self.borrower)

    @property
    def signal(self) -> str:
        if self.health_factor is not None:
            return f"HF {self.health_factor:.4f}"
        if self.shortfall is not None:
            return f"shortfall ${self.shortfall:,.2f}"
        return "liquidatable" if self.liquidatable else "healthy"


@dataclass
class BadDebtRecord:
    chain: str
    protocol: Protocol
    borrower: str
    debt_usd: Optional[float]
    recorded_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.chain, self.protocol.value, self.borrower)


@dataclass
class AssetBalance:
    asset: AssetInfo
    amount: int
    value_usd: float


@dataclass
class CollateralReport:
    """Outcome of a collateral verification query for one borrower."""
    collaterals: List[AssetBalance]
    debts: List[AssetBalance]
    failed_calls: int = 0

    @property
    def verified(self) -> bool:
        return self.failed_calls == 0

    @property
    def has_collateral(self) -> bool:
        return any(b.amount > 0 for b in self.collaterals)

    def dominant_collateral(self) -> Optional[AssetBalance]:
        held = [b for b in self.collaterals if b.amount > 0]
        return max(held, key=lambda b: b.value_usd) if held else None

    def dominant_debt(self) -> Optional[AssetBalance]:
        owed = [b for b in self.debts if b.amount > 0]
        return max(owed, key=lambda b: b.value_usd) if owed else None


@dataclass
class LiquidationCandidate:
    position: Position
    collateral: AssetBalance
    debt: AssetBalance

    @property
    def chain(self) -> str:
        return self.position.chain

    @property
    def protocol(self) -> Protocol:
        return self.position.protocol

    @property
    def borrower(self) -> str:
        return self.position.borrower

    @property
    def lock_key(self) -> Tuple[str, str]:
        return (self.position.chain, self.position.borrower.lower())


class Stats:
    """Monotonic process-wide counters. Callers read them through snapshot()."""

    FIELDS = (
        "events", "cycles", "bad_debt", "attempted", "succeeded", "failed",
        "skipped_unprofitable", "rejected", "transient_errors", "discovered",
    )

    def __init__(self):
        self._counters: Dict[str, int] = {name: 0 for name in self.FIELDS}
        self.started_at = time.time()

    def incr(self, name: str, amount: int = 1):
        if name not in self._counters:
            raise KeyError(f"Unknown stat: {name}")
        if amount < 0:
            raise ValueError("Stats are monotonic")
        self._counters[name] += amount

    def __getitem__(self, name: str) -> int:
        return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def summary(self) -> str:
        c = self._counters
        return (
            f"Events: {c['events']} | Cycles: {c['cycles']} | Attempted: {c['attempted']} | "
            f"Success: {c['succeeded']} | Failed: {c['failed']} | "
            f"Skipped: {c['skipped_unprofitable']} | Bad debt: {c['bad_debt']}"
        )
