"""
Protocol adapters.

Each adapter hides how one lending protocol encodes its position and
collateral reads and how its liquidator contract is called. The engine only
sees `evaluate`, `verify_collateral` and `build_liquidation_call`, and every
variant normalizes to the same `Position` shape.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from eth_abi import decode
from web3 import AsyncWeb3

from chain_registry import ChainContext, TransientRPCError
from config import ProtocolConfig
from models import (AssetBalance, AssetInfo, Call, CallResult, CollateralReport,
                    LiquidationCandidate, Position, Protocol)

logger = logging.getLogger("Liquidator")

# Aave V3 Pool Borrow(address indexed reserve, address user, address indexed onBehalfOf, ...)
BORROW_TOPIC = "0xb3d084820fb1a9decffb176436bd02558d15fac9b0ddfed8c465bc7359d7dce0"

# --- ABIs (only what we call) ---

ERC20_ABI = [{"inputs":[{"name":"account","type":"address"}],"name":"balanceOf","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"}]

AAVE_POOL_ABI = [{
    "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
    "name": "getUserAccountData",
    "outputs": [
        {"internalType": "uint256", "name": "totalCollateralBase", "type": "uint256"},
        {"internalType": "uint256", "name": "totalDebtBase", "type": "uint256"},
        {"internalType": "uint256", "name": "availableBorrowsBase", "type": "uint256"},
        {"internalType": "uint256", "name": "currentLiquidationThreshold", "type": "uint256"},
        {"internalType": "uint256", "name": "ltv", "type": "uint256"},
        {"internalType": "uint256", "name": "healthFactor", "type": "uint256"}
    ],
    "stateMutability": "view",
    "type": "function"
}]

COMET_ABI = [
    {"inputs":[{"name":"account","type":"address"}],"name":"isLiquidatable","outputs":[{"name":"","type":"bool"}],"stateMutability":"view","type":"function"},
    {"inputs":[{"name":"account","type":"address"}],"name":"borrowBalanceOf","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
    {"inputs":[{"name":"account","type":"address"},{"name":"asset","type":"address"}],"name":"collateralBalanceOf","outputs":[{"name":"","type":"uint128"}],"stateMutability":"view","type":"function"},
]

COMPTROLLER_ABI = [{"inputs":[{"name":"account","type":"address"}],"name":"getAccountLiquidity","outputs":[{"name":"","type":"uint256"},{"name":"","type":"uint256"},{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"}]

VTOKEN_ABI = [
    {"inputs":[{"name":"owner","type":"address"}],"name":"balanceOf","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
    {"inputs":[{"name":"account","type":"address"}],"name":"borrowBalanceStored","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
    {"inputs":[],"name":"exchangeRateStored","outputs":[{"name":"","type":"uint256"}],"stateMutability":"view","type":"function"},
]

POOL_LIQUIDATOR_ABI = [{
    "inputs": [
        {"internalType": "address", "name": "collateralAsset", "type": "address"},
        {"internalType": "address", "name": "debtAsset", "type": "address"},
        {"internalType": "address", "name": "user", "type": "address"},
        {"internalType": "uint256", "name": "debtToCover", "type": "uint256"}
    ],
    "name": "executeLiquidation",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function"
}]

COMET_LIQUIDATOR_ABI = [{
    "inputs": [
        {"internalType": "address", "name": "comet", "type": "address"},
        {"internalType": "address", "name": "borrower", "type": "address"},
        {"internalType": "address", "name": "collateralAsset", "type": "address"},
        {"internalType": "uint256", "name": "baseAmount", "type": "uint256"}
    ],
    "name": "executeLiquidation",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function"
}]

VENUS_LIQUIDATOR_ABI = [{
    "inputs": [
        {"internalType": "address", "name": "debtAsset", "type": "address"},
        {"internalType": "uint256", "name": "debtAmount", "type": "uint256"},
        {"internalType": "address", "name": "vTokenBorrowed", "type": "address"},
        {"internalType": "address", "name": "vTokenCollateral", "type": "address"},
        {"internalType": "address", "name": "borrower", "type": "address"}
    ],
    "name": "executeLiquidation",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function"
}]


class DecodeError(Exception):
    """A sub-call's return data did not have the expected shape or meaning."""


def encode_call(fn) -> bytes:
    hex_data = fn._encode_transaction_data()
    return bytes.fromhex(hex_data[2:]) if isinstance(hex_data, str) else bytes(hex_data)


def decode_uint(data: bytes) -> int:
    return decode(['uint256'], data)[0]


def to_units(amount: int, decimals: int) -> float:
    return amount / 10 ** decimals


# --- BASE ---

class ProtocolAdapter:
    protocol: Protocol
    liquidation_bonus_bps = 0
    close_factor = 0.5
    calls_per_borrower = 1
    liquidator_abi: list = []

    def __init__(self, chain: str, config: ProtocolConfig):
        self.chain = chain
        self.config = config
        self.market = AsyncWeb3.to_checksum_address(config.market)
        self.assets: Tuple[AssetInfo, ...] = config.assets
        self.name = config.name or self.protocol.value

    def __repr__(self):
        return f"<{type(self).__name__} {self.chain}:{self.name}>"

    @property
    def bonus(self) -> float:
        return self.liquidation_bonus_bps / 10_000

    # Hooks each protocol fills in
    def encode_position_calls(self, ctx: ChainContext, borrower: str) -> List[Call]:
        raise NotImplementedError

    def decode_position(self, ctx: ChainContext, borrower: str, payloads: List[bytes]) -> Position:
        raise NotImplementedError

    async def verify_collateral(self, ctx: ChainContext, borrower: str) -> CollateralReport:
        raise NotImplementedError

    def liquidation_args(self, candidate: LiquidationCandidate, debt_to_cover: int) -> tuple:
        raise NotImplementedError

    def discovery_topic(self) -> Optional[Tuple[str, int]]:
        """(event topic0, index of the borrower topic) for log discovery, if supported."""
        return None

    def _position(self, borrower: str, **fields) -> Position:
        return Position(chain=self.chain, protocol=self.protocol, market=self.market,
                        borrower=borrower, **fields)

    async def evaluate(self, ctx: ChainContext, borrowers: Sequence[str]) -> List[Position]:
        """Reads every borrower in one aggregate3 call. Failed sub-calls skip that borrower."""
        calls: List[Call] = []
        for borrower in borrowers:
            calls.extend(self.encode_position_calls(ctx, borrower))
        results = await ctx.aggregate3(calls)
        if len(results) != len(calls):
            raise TransientRPCError(f"[{self.chain}] aggregate3 returned {len(results)} results for {len(calls)} calls")

        positions = []
        n = self.calls_per_borrower
        for i, borrower in enumerate(borrowers):
            chunk: List[CallResult] = results[i * n:(i + 1) * n]
            if not all(ok for ok, _ in chunk):
                logger.debug(f"[{self.chain}] {self.name}: sub-call failed for {borrower}, retry next cycle")
                continue
            try:
                positions.append(self.decode_position(ctx, borrower, [data for _, data in chunk]))
            except Exception as e:
                logger.warning(f"⚠️ [{self.chain}] {self.name}: failed to decode {borrower}: {e}")
                continue
        return positions

    def debt_to_cover(self, candidate: LiquidationCandidate) -> int:
        return candidate.debt.amount * int(self.close_factor * 10_000) // 10_000

    def build_liquidation_call(self, ctx: ChainContext, liquidator: str,
                               candidate: LiquidationCandidate, debt_to_cover: int):
        contract = ctx.contract(liquidator, self.liquidator_abi)
        return contract.functions.executeLiquidation(*self.liquidation_args(candidate, debt_to_cover))

    def _balance(self, ctx: ChainContext, asset: AssetInfo, amount: int) -> AssetBalance:
        return AssetBalance(asset, amount, to_units(amount, asset.decimals) * ctx.price_of(asset))

    async def _read_balances(self, ctx: ChainContext,
                             entries: List[Tuple[str, AssetInfo, Call]]) -> CollateralReport:
        """Runs (role, asset, call) entries in one aggregate3 and sorts them into a report."""
        results = await ctx.aggregate3([call for _, _, call in entries])
        report = CollateralReport(collaterals=[], debts=[])
        for (role, asset, _), (ok, data) in zip(entries, results):
            if not ok:
                if role == "collateral":
                    report.failed_calls += 1
                continue
            try:
                amount = decode_uint(data)
            except Exception as e:
                logger.debug(f"[{self.chain}] balance decode failed for {asset.symbol}: {e}")
                if role == "collateral":
                    report.failed_calls += 1
                continue
            target = report.collaterals if role == "collateral" else report.debts
            target.append(self._balance(ctx, asset, amount))
        return report


# --- RESERVE POOL (Aave V3) ---

class ReservePoolAdapter(ProtocolAdapter):
    protocol = Protocol.RESERVE_POOL
    liquidation_bonus_bps = 500
    liquidator_abi = POOL_LIQUIDATOR_ABI

    def encode_position_calls(self, ctx, borrower):
        pool = ctx.contract(self.market, AAVE_POOL_ABI)
        return [(self.market, True, encode_call(pool.functions.getUserAccountData(borrower)))]

    def decode_position(self, ctx, borrower, payloads):
        data = decode(['uint256'] * 6, payloads[0])
        collateral = data[0] / 1e8
        debt = data[1] / 1e8
        hf = data[5] / 1e18
        return self._position(
            borrower,
            liquidatable=0 < hf < 1.0,
            collateral_usd=collateral,
            debt_usd=debt,
            health_factor=hf,
        )

    async def verify_collateral(self, ctx, borrower):
        entries = []
        for asset in self.assets:
            token = ctx.contract(asset.collateral_token, ERC20_ABI)
            entries.append(("collateral", asset, (token.address, True, encode_call(token.functions.balanceOf(borrower)))))
            if asset.debt_token:
                debt = ctx.contract(asset.debt_token, ERC20_ABI)
                entries.append(("debt", asset, (debt.address, True, encode_call(debt.functions.balanceOf(borrower)))))
        return await self._read_balances(ctx, entries)

    def liquidation_args(self, candidate, debt_to_cover):
        return (
            AsyncWeb3.to_checksum_address(candidate.collateral.asset.token),
            AsyncWeb3.to_checksum_address(candidate.debt.asset.token),
            candidate.borrower,
            debt_to_cover,
        )

    def discovery_topic(self):
        return BORROW_TOPIC, 2


# --- MARKET (Compound III / Comet) ---

class MarketAdapter(ProtocolAdapter):
    protocol = Protocol.MARKET
    liquidation_bonus_bps = 800
    calls_per_borrower = 2
    liquidator_abi = COMET_LIQUIDATOR_ABI

    def __init__(self, chain, config):
        super().__init__(chain, config)
        if config.base_asset is None:
            raise ValueError(f"{chain} {self.name}: comet market needs a base asset")
        self.base_asset = config.base_asset

    def encode_position_calls(self, ctx, borrower):
        comet = ctx.contract(self.market, COMET_ABI)
        return [
            (self.market, True, encode_call(comet.functions.isLiquidatable(borrower))),
            (self.market, True, encode_call(comet.functions.borrowBalanceOf(borrower))),
        ]

    def decode_position(self, ctx, borrower, payloads):
        is_liquidatable = decode(['bool'], payloads[0])[0]
        borrowed = decode_uint(payloads[1])
        debt_usd = to_units(borrowed, self.base_asset.decimals) * ctx.price_of(self.base_asset)
        return self._position(borrower, liquidatable=bool(is_liquidatable) and borrowed > 0,
                              debt_usd=debt_usd)

    async def verify_collateral(self, ctx, borrower):
        comet = ctx.contract(self.market, COMET_ABI)
        entries = [
            ("collateral", asset,
             (self.market, True, encode_call(comet.functions.collateralBalanceOf(
                 borrower, AsyncWeb3.to_checksum_address(asset.token)))))
            for asset in self.assets
        ]
        entries.append(("debt", self.base_asset,
                        (self.market, True, encode_call(comet.functions.borrowBalanceOf(borrower)))))
        return await self._read_balances(ctx, entries)

    def liquidation_args(self, candidate, debt_to_cover):
        return (
            self.market,
            candidate.borrower,
            AsyncWeb3.to_checksum_address(candidate.collateral.asset.token),
            debt_to_cover,
        )


# --- COMPTROLLER (Venus) ---

class ComptrollerAdapter(ProtocolAdapter):
    protocol = Protocol.COMPTROLLER
    liquidation_bonus_bps = 1000
    liquidator_abi = VENUS_LIQUIDATOR_ABI

    def encode_position_calls(self, ctx, borrower):
        comptroller = ctx.contract(self.market, COMPTROLLER_ABI)
        return [(self.market, True, encode_call(comptroller.functions.getAccountLiquidity(borrower)))]

    def decode_position(self, ctx, borrower, payloads):
        error, _liquidity, shortfall = decode(['uint256'] * 3, payloads[0])
        if error != 0:
            raise DecodeError(f"comptroller error code {error}")
        return self._position(borrower, liquidatable=shortfall > 0, shortfall=shortfall / 1e18)

    async def verify_collateral(self, ctx, borrower):
        entries = []
        for asset in self.assets:
            vtoken = ctx.contract(asset.collateral_token, VTOKEN_ABI)
            entries.append((vtoken.address, True, encode_call(vtoken.functions.balanceOf(borrower))))
            entries.append((vtoken.address, True, encode_call(vtoken.functions.borrowBalanceStored(borrower))))
            entries.append((vtoken.address, True, encode_call(vtoken.functions.exchangeRateStored())))
        results = await ctx.aggregate3(entries)

        report = CollateralReport(collaterals=[], debts=[])
        for i, asset in enumerate(self.assets):
            (bal_ok, bal), (debt_ok, debt), (rate_ok, rate) = results[i * 3:i * 3 + 3]
            if bal_ok and rate_ok:
                try:
                    underlying = decode_uint(bal) * decode_uint(rate) // 10 ** 18
                    report.collaterals.append(self._balance(ctx, asset, underlying))
                except Exception as e:
                    logger.debug(f"[{self.chain}] vToken decode failed for {asset.symbol}: {e}")
                    report.failed_calls += 1
            else:
                report.failed_calls += 1
            if debt_ok:
                try:
                    report.debts.append(self._balance(ctx, asset, decode_uint(debt)))
                except Exception as e:
                    logger.debug(f"[{self.chain}] borrow decode failed for {asset.symbol}: {e}")
        return report

    def liquidation_args(self, candidate, debt_to_cover):
        return (
            AsyncWeb3.to_checksum_address(candidate.debt.asset.token),
            debt_to_cover,
            AsyncWeb3.to_checksum_address(candidate.debt.asset.debt_token),
            AsyncWeb3.to_checksum_address(candidate.collateral.asset.collateral_token),
            candidate.borrower,
        )


ADAPTERS: Dict[Protocol, type] = {
    Protocol.RESERVE_POOL: ReservePoolAdapter,
    Protocol.MARKET: MarketAdapter,
    Protocol.COMPTROLLER: ComptrollerAdapter,
}


def make_adapter(chain: str, config: ProtocolConfig) -> ProtocolAdapter:
    return ADAPTERS[config.protocol](chain, config)


def adapters_for(ctx: ChainContext) -> List[ProtocolAdapter]:
    return [make_adapter(ctx.name, proto) for proto in ctx.config.protocols]
