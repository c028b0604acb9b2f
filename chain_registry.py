import asyncio
import logging
import time
from typing import Dict, Iterator, List, Optional, Sequence

from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

from config import ChainConfig, ConfigError, EngineSettings
from models import AssetInfo, Call, CallResult, Protocol

logger = logging.getLogger("Liquidator")

MULTICALL3_ABI = [{"inputs":[{"components":[{"internalType":"address","name":"target","type":"address"},{"internalType":"bool","name":"allowFailure","type":"bool"},{"internalType":"bytes","name":"callData","type":"bytes"}],"internalType":"struct Multicall3.Call3[]","name":"calls","type":"tuple[]"}],"name":"aggregate3","outputs":[{"components":[{"internalType":"bool","name":"success","type":"bool"},{"internalType":"bytes","name":"returnData","type":"bytes"}],"internalType":"struct Multicall3.Result[]","name":"returnData","type":"tuple[]"}],"stateMutability":"payable","type":"function"}]

# Uniswap V3 QuoterV2.quoteExactInputSingle
QUOTER_V2_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "tokenIn",            "type": "address"},
                    {"name": "tokenOut",           "type": "address"},
                    {"name": "amountIn",           "type": "uint256"},
                    {"name": "fee",                "type": "uint24"},
                    {"name": "sqrtPriceLimitX96",  "type": "uint160"},
                ],
                "name": "params",
                "type": "tuple",
            }
        ],
        "name": "quoteExactInputSingle",
        "outputs": [
            {"name": "amountOut",              "type": "uint256"},
            {"name": "sqrtPriceX96After",      "type": "uint160"},
            {"name": "initializedTicksCrossed","type": "uint32"},
            {"name": "gasEstimate",            "type": "uint256"},
        ],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

QUOTER_FEE_TIERS = (500, 3000, 10000)


class TransientRPCError(Exception):
    """The remote call as a whole failed (transport, timeout, rate limit)."""


# --- RPC MANAGER ---

class AsyncRPCManager:
    """Manages one chain's RPC endpoints with failover on rate-limit errors."""

    RATE_LIMIT_KEYWORDS = ("429", "403", "rate", "forbidden", "quota", "too many requests", "-32001")

    def __init__(self, chain: str, endpoints: Sequence[str], cooldown: float = 2.0):
        if not endpoints:
            raise ConfigError(f"{chain}: no RPC endpoint")
        self.chain = chain
        self.endpoints = list(endpoints)
        self.current_index = 0
        self.strike_count = 0
        self.last_rate_limit = 0.0
        self.cooldown = cooldown
        self.w3 = self._build(self.endpoints[0])

    def _build(self, url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url))

    @property
    def url(self) -> str:
        return self.endpoints[self.current_index]

    async def connect(self):
        """Switch to the current endpoint and check it. A dead endpoint is logged, not raised."""
        await self.close()
        url = self.url
        logger.info(f"🔌 [{self.chain}] Connecting to RPC: {url[:40]}...")
        self.w3 = self._build(url)
        try:
            if not await self.w3.is_connected():
                logger.warning(f"⚠️ [{self.chain}] RPC {url[:40]} might be down, but continuing...")
                return
        except Exception as e:
            logger.warning(f"⚠️ [{self.chain}] Connection test failed, bypassing: {e}")
            return
        logger.info(f"🟢 [{self.chain}] Connected to RPC [{self.current_index + 1}/{len(self.endpoints)}]")

    async def close(self):
        """Closes the current provider's aiohttp session."""
        try:
            await self.w3.provider.disconnect()
        except Exception as e:
            logger.debug(f"[{self.chain}] Previous RPC session close failed: {e}")

    def is_rate_limit_error(self, error) -> bool:
        err_str = str(error).lower()
        return any(k in err_str for k in self.RATE_LIMIT_KEYWORDS)

    async def handle_rate_limit(self):
        """Three strikes rotate to the next endpoint, otherwise cool down."""
        self.strike_count += 1
        self.last_rate_limit = time.time()

        if self.strike_count >= 3:
            self.strike_count = 0
            self.current_index = (self.current_index + 1) % len(self.endpoints)
            logger.warning(f"🔄 [{self.chain}] 3 strikes! Switching to RPC [{self.current_index + 1}/{len(self.endpoints)}]")
            await self.connect()
        else:
            logger.warning(f"⏳ [{self.chain}] Rate limited (Strike {self.strike_count}/3). Cooling down {self.cooldown}s...")
            await asyncio.sleep(self.cooldown)


# --- CHAIN CONTEXT ---

class ChainContext:
    """Everything the engine needs to talk to one chain."""

    def __init__(self, config: ChainConfig, private_key: Optional[str] = None,
                 rpc_timeout: float = 20.0, rpc: Optional[AsyncRPCManager] = None):
        self.config = config
        self.name = config.name
        self.rpc = rpc or AsyncRPCManager(config.name, config.rpc_urls)
        self.rpc_timeout = rpc_timeout
        self.account = self.w3.eth.account.from_key(private_key) if private_key else None
        # Serializes nonce allocation for this chain's signer
        self.nonce_lock = asyncio.Lock()

        self.prices: Dict[str, float] = {config.native_symbol: config.native_price_usd}
        for proto in config.protocols:
            assets = proto.assets + ((proto.base_asset,) if proto.base_asset else ())
            for asset in assets:
                self.prices.setdefault(asset.symbol, asset.price_usd)

    @property
    def w3(self) -> AsyncWeb3:
        return self.rpc.w3

    @property
    def signer(self) -> Optional[str]:
        return self.account.address if self.account else None

    def contract(self, address: str, abi: list):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    def liquidator_for(self, protocol: Protocol) -> Optional[str]:
        for proto in self.config.protocols:
            if proto.protocol == protocol and proto.liquidator:
                return proto.liquidator
        return None

    # --- prices ---

    def price_of(self, asset: AssetInfo) -> float:
        return self.prices.get(asset.symbol, asset.price_usd)

    def native_price(self) -> float:
        return self.prices.get(self.config.native_symbol, self.config.native_price_usd)

    def set_price(self, symbols: Sequence[str], price: float):
        for symbol in symbols:
            self.prices[symbol] = price

    # --- reads ---

    async def _guarded(self, what: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.rpc_timeout)
        except asyncio.TimeoutError:
            raise TransientRPCError(f"[{self.name}] {what} timed out after {self.rpc_timeout}s")
        except Exception as e:
            if self.rpc.is_rate_limit_error(e):
                await self.rpc.handle_rate_limit()
            raise TransientRPCError(f"[{self.name}] {what} failed: {e}") from e

    async def aggregate3(self, calls: List[Call]) -> List[CallResult]:
        """One Multicall3 round trip. Per-call failures come back as success=False."""
        if not calls:
            return []
        multicall = self.contract(self.config.multicall_address, MULTICALL3_ABI)
        results = await self._guarded("aggregate3", multicall.functions.aggregate3(list(calls)).call())
        return [(bool(ok), bytes(data)) for ok, data in results]

    async def block_number(self) -> int:
        return await self._guarded("eth_blockNumber", self.w3.eth.block_number)

    async def get_logs(self, params: dict) -> list:
        return await self._guarded("eth_getLogs", self.w3.eth.get_logs(params))

    async def gas_price_gwei(self) -> float:
        try:
            wei = await asyncio.wait_for(self.w3.eth.gas_price, timeout=self.rpc_timeout)
            return wei / 1e9
        except Exception as e:
            logger.warning(f"⚠️ [{self.name}] Gas price read failed, using {self.config.fallback_gas_gwei} gwei: {e}")
            return self.config.fallback_gas_gwei

    async def quote_swap(self, token_in: str, token_out: str, amount_in: int) -> Optional[int]:
        """Best Uniswap V3 output across fee tiers, or None when no pool quotes."""
        if not self.config.quoter_address or amount_in <= 0:
            return None
        quoter = self.contract(self.config.quoter_address, QUOTER_V2_ABI)
        best = None
        for fee in QUOTER_FEE_TIERS:
            params = (
                AsyncWeb3.to_checksum_address(token_in),
                AsyncWeb3.to_checksum_address(token_out),
                int(amount_in),
                fee,
                0,
            )
            try:
                result = await asyncio.wait_for(
                    quoter.functions.quoteExactInputSingle(params).call(), timeout=self.rpc_timeout
                )
            except ContractLogicError:
                # No pool at this tier
                continue
            except Exception as e:
                if self.rpc.is_rate_limit_error(e):
                    await self.rpc.handle_rate_limit()
                logger.debug(f"[{self.name}] Quote failed at fee {fee}: {e}")
                continue
            if best is None or result[0] > best:
                best = result[0]
        return best

    # --- writes ---

    async def simulate(self, tx_func) -> Optional[str]:
        """Pre-flight via eth_call. Returns None on success, otherwise the revert reason."""
        try:
            await asyncio.wait_for(tx_func.call({'from': self.signer}), timeout=self.rpc_timeout)
            return None
        except ContractLogicError as e:
            return str(e)
        except Exception as e:
            return f"simulation error: {e}"

    async def _fee_params(self) -> dict:
        block = await self.w3.eth.get_block('latest')
        base_fee = block.get('baseFeePerGas')
        if base_fee is None:
            return {'gasPrice': await self.w3.eth.gas_price}
        priority = self.w3.to_wei(self.config.priority_fee_gwei, 'gwei')
        return {'maxFeePerGas': base_fee + priority, 'maxPriorityFeePerGas': priority}

    async def submit(self, tx_func) -> str:
        """Builds, signs and sends under the signer's nonce lock. Returns the tx hash."""
        if self.account is None:
            raise RuntimeError(f"[{self.name}] no signer configured")
        async with self.nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, 'pending')

            try:
                gas_est = await tx_func.estimate_gas({'from': self.account.address})
                gas_limit = int(gas_est * 1.2)
            except Exception as gas_err:
                logger.warning(f"⚠️ [{self.name}] Gas estimation failed, using fallback: {gas_err}")
                gas_limit = self.config.gas_limit

            params = {
                'from': self.account.address,
                'nonce': nonce,
                'gas': gas_limit,
                'chainId': self.config.chain_id,
            }
            params.update(await self._fee_params())
            tx = await tx_func.build_transaction(params)

            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float):
        return await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)


# --- REGISTRY ---

class ChainRegistry:
    """Ready chain contexts plus the per-chain reasons for any excluded chain."""

    def __init__(self, contexts: Optional[Dict[str, ChainContext]] = None,
                 errors: Optional[Dict[str, str]] = None):
        self.contexts: Dict[str, ChainContext] = dict(contexts or {})
        self.errors: Dict[str, str] = dict(errors or {})

    @classmethod
    async def build(cls, configs: Dict[str, ChainConfig], settings: EngineSettings,
                    errors: Optional[Dict[str, str]] = None) -> "ChainRegistry":
        registry = cls(errors=errors)
        for name, cfg in configs.items():
            try:
                ctx = ChainContext(cfg, settings.private_key, settings.rpc_timeout)
            except Exception as e:
                registry.errors[name] = str(e)
                logger.error(f"❌ {name}: excluded ({e})")
                continue
            await ctx.rpc.connect()
            registry.contexts[name] = ctx
            signer = ctx.signer or "read-only"
            logger.info(f"✅ {name}: ready | signer {signer} | {len(cfg.protocols)} protocol(s)")
        return registry

    def get(self, name: str) -> ChainContext:
        return self.contexts[name]

    def names(self) -> List[str]:
        return list(self.contexts)

    def __iter__(self) -> Iterator[ChainContext]:
        return iter(self.contexts.values())

    def __len__(self) -> int:
        return len(self.contexts)
