import asyncio
from collections import deque
from dataclasses import replace

import pytest
from eth_abi import encode
from web3 import AsyncWeb3

from chain_registry import ChainContext
from config import ChainConfig, EngineSettings, PriceFeed, ProtocolConfig
from models import AssetBalance, AssetInfo, LiquidationCandidate, Position, Protocol, Stats

TEST_KEY = "0x" + "11" * 32
LOCAL_RPC = "http://127.0.0.1:8545"


def address(n: int) -> str:
    return AsyncWeb3.to_checksum_address(f"0x{n:040x}")


# --- asset tables ---

POOL = address(0xA00)
COMET = address(0xB00)
COMPTROLLER = address(0xC00)
FEED = address(0xF00)

WETH = AssetInfo("WETH", address(0x100), address(0x101), address(0x102), 18, 2000.0)
USDC = AssetInfo("USDC", address(0x200), address(0x201), address(0x202), 6, 1.0)

COMET_WETH = AssetInfo("WETH", WETH.token, WETH.token, None, 18, 2000.0)
COMET_USDC = AssetInfo("USDC", USDC.token, USDC.token, None, 6, 1.0)

VWETH = AssetInfo("WETH", WETH.token, address(0xC01), address(0xC01), 18, 2000.0)
VUSDC = AssetInfo("USDC", USDC.token, address(0xC02), address(0xC02), 18, 1.0)

POOL_CONFIG = ProtocolConfig(Protocol.RESERVE_POOL, POOL, (WETH, USDC), name="Aave V3",
                             liquidator=address(0xA01))
COMET_CONFIG = ProtocolConfig(Protocol.MARKET, COMET, (COMET_WETH,), name="Comet USDC",
                              base_asset=COMET_USDC, liquidator=address(0xB01))
VENUS_CONFIG = ProtocolConfig(Protocol.COMPTROLLER, COMPTROLLER, (VWETH, VUSDC), name="Venus Core",
                              liquidator=address(0xC10))

CHAIN_CONFIG = ChainConfig(
    name="testnet",
    chain_id=31337,
    rpc_urls=(LOCAL_RPC,),
    protocols=(POOL_CONFIG, COMET_CONFIG, VENUS_CONFIG),
    gas_limit=800_000,
    fallback_gas_gwei=1.0,
    max_gas_gwei=50.0,
    native_symbol="ETH",
    native_price_usd=2000.0,
    price_feeds=(PriceFeed("ETH/USD", FEED, ("ETH", "WETH")),),
    explorer="https://explorer.test/tx/",
)


# --- return-data encoders ---

def uint(value: int) -> bytes:
    return encode(['uint256'], [value])


def boolean(value: bool) -> bytes:
    return encode(['bool'], [value])


def account_data(collateral_usd: float, debt_usd: float, hf: float) -> bytes:
    return encode(['uint256'] * 6, [int(collateral_usd * 1e8), int(debt_usd * 1e8), 0, 8000, 7500, int(hf * 1e18)])


def account_liquidity(error: int, liquidity: int, shortfall: int) -> bytes:
    return encode(['uint256'] * 3, [error, liquidity, shortfall])


def ok(data: bytes):
    return (True, data)


FAILED = (False, b"")


def units(asset: AssetInfo, usd: float) -> int:
    return int(usd / asset.price_usd * 10 ** asset.decimals)


def make_candidate(protocol=Protocol.RESERVE_POOL, market=POOL, borrower=None,
                   collateral=WETH, collateral_usd=5000.0, debt=USDC, debt_usd=4000.0,
                   chain="testnet") -> LiquidationCandidate:
    position = Position(chain=chain, protocol=protocol, market=market, borrower=borrower or address(0xBEEF),
                        liquidatable=True, collateral_usd=collateral_usd, debt_usd=debt_usd, health_factor=0.95)
    return LiquidationCandidate(
        position=position,
        collateral=AssetBalance(collateral, units(collateral, collateral_usd), collateral_usd),
        debt=AssetBalance(debt, units(debt, debt_usd), debt_usd),
    )


# --- fakes ---

class FakeChainContext(ChainContext):
    """A real ChainContext (encoding, prices, config) whose network calls are scripted."""

    def __init__(self, config: ChainConfig = CHAIN_CONFIG, private_key=None):
        super().__init__(config, private_key, rpc_timeout=1.0)
        self.responses = deque()
        self.responder = None
        self.calls = []
        self.gas_gwei = 1.0
        self.quote = None
        self.quote_requests = []
        self.revert = None
        self.submitted = []
        self.receipt = {"status": 1, "gasUsed": 350_000}
        self.receipt_delay = 0.0
        self.block = 10_000
        self.logs = []
        self.log_errors = deque()
        self.log_requests = []

    async def aggregate3(self, calls):
        self.calls.append(list(calls))
        if self.responses:
            item = self.responses.popleft()
        elif self.responder is not None:
            item = self.responder
        else:
            raise AssertionError("unexpected aggregate3 call")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(calls)
        return item

    async def gas_price_gwei(self):
        return self.gas_gwei

    async def quote_swap(self, token_in, token_out, amount_in):
        self.quote_requests.append((token_in, token_out, amount_in))
        return self.quote

    async def simulate(self, tx_func):
        return self.revert

    async def submit(self, tx_func):
        await asyncio.sleep(0)
        self.submitted.append(tx_func)
        return "0x" + f"{len(self.submitted):064x}"

    async def wait_for_receipt(self, tx_hash, timeout):
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        if isinstance(self.receipt, Exception):
            raise self.receipt
        return self.receipt

    async def block_number(self):
        return self.block

    async def get_logs(self, params):
        self.log_requests.append(params)
        if self.log_errors:
            raise self.log_errors.popleft()
        start, end = int(params['fromBlock'], 16), int(params['toBlock'], 16)
        return [log for log in self.logs if start <= log['blockNumber'] <= end]


class FakeNotifier:
    def __init__(self):
        self.sent = []

    @property
    def enabled(self):
        return True

    def notify(self, title, body, urgent=False):
        self.sent.append((title, body, urgent))

    async def drain(self):
        pass


# --- fixtures ---

@pytest.fixture
def stats():
    return Stats()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def ctx():
    return FakeChainContext()


@pytest.fixture
def signer_ctx():
    return FakeChainContext(private_key=TEST_KEY)


@pytest.fixture
def quoter_ctx():
    return FakeChainContext(replace(CHAIN_CONFIG, quoter_address=address(0xD00)), private_key=TEST_KEY)


@pytest.fixture
def settings():
    return EngineSettings(
        private_key=TEST_KEY,
        execution_enabled=True,
        min_profit_usd=10.0,
        max_slippage=0.02,
        min_debt_usd=100.0,
        rpc_timeout=1.0,
        confirm_timeout=1.0,
        health_port=None,
        db_file=None,
    )
