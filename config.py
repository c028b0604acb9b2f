import os
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from web3 import Web3

from models import AssetInfo, Protocol

# --- ENVIRONMENT ---

ENV_PATH = os.getenv("LIQUIDATOR_ENV", ".env")
load_dotenv(ENV_PATH)

logger = logging.getLogger("Liquidator")

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"


class ConfigError(Exception):
    """A required setting is missing or malformed."""


# --- TYPED CONFIG ---

@dataclass(frozen=True)
class PriceFeed:
    name: str
    address: str
    symbols: Tuple[str, ...]


@dataclass(frozen=True)
class ProtocolConfig:
    protocol: Protocol
    market: str
    assets: Tuple[AssetInfo, ...]
    name: str = ""
    # Comet base asset (the only borrowable asset of a market)
    base_asset: Optional[AssetInfo] = None
    liquidator: Optional[str] = None


@dataclass(frozen=True)
class ChainConfig:
    name: str
    chain_id: int
    rpc_urls: Tuple[str, ...]
    protocols: Tuple[ProtocolConfig, ...]
    ws_url: Optional[str] = None
    multicall_address: str = MULTICALL3_ADDRESS
    gas_limit: int = 800_000
    fallback_gas_gwei: float = 1.0
    max_gas_gwei: float = 100.0
    priority_fee_gwei: float = 0.5
    native_symbol: str = "ETH"
    native_price_usd: float = 3000.0
    price_feeds: Tuple[PriceFeed, ...] = ()
    quoter_address: Optional[str] = None
    explorer: str = ""

    def validate(self):
        """Raises ConfigError if this chain cannot be run."""
        if not self.rpc_urls:
            raise ConfigError(f"missing {self.name.upper()}_RPC_URL")
        if not Web3.is_address(self.multicall_address):
            raise ConfigError(f"invalid multicall address {self.multicall_address!r}")
        if not self.protocols:
            raise ConfigError("no lending protocol configured")
        for proto in self.protocols:
            if not Web3.is_address(proto.market):
                raise ConfigError(f"invalid {proto.protocol.value} market address {proto.market!r}")
            if proto.liquidator and not Web3.is_address(proto.liquidator):
                raise ConfigError(f"invalid {proto.protocol.value} liquidator address {proto.liquidator!r}")
        for feed in self.price_feeds:
            if not Web3.is_address(feed.address):
                raise ConfigError(f"invalid price feed address for {feed.name}")


@dataclass
class EngineSettings:
    private_key: Optional[str] = None
    execution_enabled: bool = False
    min_profit_usd: float = 5.0
    max_gas_gwei: Optional[float] = None
    max_slippage: float = 0.02
    min_debt_usd: float = 100.0
    flash_loan_fee: float = 0.0009
    batch_size: int = 500
    scan_interval: float = 30.0
    scan_timeout: float = 60.0
    max_backoff: float = 300.0
    rpc_timeout: float = 20.0
    confirm_timeout: float = 120.0
    lock_expiry: float = 120.0
    discovery_interval: float = 300.0
    discovery_lookback: int = 100_000
    discovery_chunk: int = 2_000
    stats_interval: float = 60.0
    health_port: Optional[int] = 3847
    discord_webhook: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    db_file: Optional[str] = "liquidator.db"
    borrowers_file: str = "data/borrowers.json"
    legacy_compound_file: str = "data/compound_borrowers.json"
    liquidators_file: str = "data/liquidators.json"
    chains: Tuple[str, ...] = ()


# --- BUILT-IN CHAIN TABLES ---

AAVE_V3_POOL = "0x794a61358D6845594F94dc1DB02A252b5b4814aD"

def _aave(symbol, token, a_token, debt_token, decimals, price):
    return AssetInfo(symbol, token, a_token, debt_token, decimals, price)

def _comet(symbol, token, decimals, price):
    return AssetInfo(symbol, token, token, None, decimals, price)

def _vtoken(symbol, vtoken, underlying, price):
    return AssetInfo(symbol, underlying, vtoken, vtoken, 18, price)


DEFAULT_CHAINS: Dict[str, ChainConfig] = {
    "base": ChainConfig(
        name="base", chain_id=8453, rpc_urls=(),
        gas_limit=800_000, fallback_gas_gwei=0.001, max_gas_gwei=1.0, priority_fee_gwei=0.05,
        native_symbol="ETH", native_price_usd=3000.0,
        quoter_address="0x3d4e44Eb1374240CE5F1B871ab261CD16335B76a",
        explorer="https://basescan.org/tx/",
        price_feeds=(PriceFeed("ETH/USD", "0x71041dddad3595F9CEd3DcCFBe3D1F4b0a16Bb70", ("ETH", "WETH")),),
        protocols=(
            ProtocolConfig(Protocol.RESERVE_POOL, "0xA238Dd80C259a72e81d7e4664a9801593F98d1c5", name="Aave V3", assets=(
                _aave("WETH", "0x4200000000000000000000000000000000000006", "0xD4a0e0b9149BCee3C920d2E00b5dE09138fd8bb7", "0x24e6e0795b3c7c71D965fCc4f371803d1c1DcA1E", 18, 3000.0),
                _aave("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "0x4e65fE4DbA92790696d040ac24Aa414708F5c0AB", "0x59dca05b6c26dbd64b5381374aAaC5CD05644C28", 6, 1.0),
                _aave("cbETH", "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", "0xcf3D55c10DB69f28fD1A75Bd73f3D8A2d9c595ad", "0x1DabC36f19909425f654777249815c073E8Fd79F", 18, 3100.0),
            )),
            ProtocolConfig(Protocol.MARKET, "0xb125E6687d4313864e53df431d5425969c15Eb2F", name="Comet USDC",
                base_asset=_comet("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6, 1.0),
                assets=(
                    _comet("WETH", "0x4200000000000000000000000000000000000006", 18, 3000.0),
                    _comet("cbETH", "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", 18, 3100.0),
                )),
        ),
    ),
    "polygon": ChainConfig(
        name="polygon", chain_id=137, rpc_urls=(),
        gas_limit=800_000, fallback_gas_gwei=50.0, max_gas_gwei=500.0, priority_fee_gwei=30.0,
        native_symbol="WMATIC", native_price_usd=0.5,
        quoter_address="0x61fFE014bA17989E743c5F6cB21bF9697530B21e",
        explorer="https://polygonscan.com/tx/",
        price_feeds=(PriceFeed("ETH/USD", "0xF9680D99D6C9589e2a93a78A04A279e509205945", ("WETH",)),),
        protocols=(
            ProtocolConfig(Protocol.RESERVE_POOL, AAVE_V3_POOL, name="Aave V3", assets=(
                _aave("WETH", "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", "0xe50fA9b3c56FfB159cB0FCA61F5c9D750e8128c8", "0x0c84331e39d6658Cd6e6b9ba04736cC4c4734351", 18, 3000.0),
                _aave("USDC", "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", "0x625E7708f30cA75bfd92586e17077590C60eb4cD", "0xFCCf3cAbbe80101232d343252614b6A3eE81C989", 6, 1.0),
                _aave("WMATIC", "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", "0x6d80113e533a2C0fe82EaBD35f1875DcEA89Ea97", "0x4a1c3aD6Ed28a636ee1751C69071f6be75DEb8B8", 18, 0.5),
            )),
            ProtocolConfig(Protocol.MARKET, "0xF25212E676D1F7F89Cd72fFEe66158f541246445", name="Comet USDC",
                base_asset=_comet("USDC", "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", 6, 1.0),
                assets=(_comet("WETH", "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", 18, 3000.0),)),
        ),
    ),
    "arbitrum": ChainConfig(
        name="arbitrum", chain_id=42161, rpc_urls=(),
        gas_limit=1_500_000, fallback_gas_gwei=0.01, max_gas_gwei=1.0, priority_fee_gwei=0.5,
        native_symbol="ETH", native_price_usd=3000.0,
        quoter_address="0x61fFE014bA17989E743c5F6cB21bF9697530B21e",
        explorer="https://arbiscan.io/tx/",
        price_feeds=(PriceFeed("ETH/USD", "0x639Fe6ab55C921f74e7fac1ee960C0B6293ba612", ("ETH", "WETH")),),
        protocols=(
            ProtocolConfig(Protocol.RESERVE_POOL, AAVE_V3_POOL, name="Aave V3", assets=(
                _aave("WETH", "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "0xe50fA9b3c56FfB159cB0FCA61F5c9D750e8128c8", "0x0c84331e39d6658Cd6e6b9ba04736cC4c4734351", 18, 3000.0),
                _aave("USDC", "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "0x724dc807b04555b71ed48a6896b6F41593b8C637", "0xFCCf3cAbbe80101232d343252614b6A3eE81C989", 6, 1.0),
            )),
            ProtocolConfig(Protocol.MARKET, "0xA5EDBDD9646f8dFF606d7448e414884C7d905dCA", name="Comet USDC",
                base_asset=_comet("USDC", "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 6, 1.0),
                assets=(_comet("WETH", "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", 18, 3000.0),)),
        ),
    ),
    "avalanche": ChainConfig(
        name="avalanche", chain_id=43114, rpc_urls=(),
        gas_limit=800_000, fallback_gas_gwei=30.0, max_gas_gwei=100.0, priority_fee_gwei=1.0,
        native_symbol="WAVAX", native_price_usd=35.0,
        quoter_address="0xbe0F5544EC67e9B3b2D979aaA43f18Fd87E6257F",
        explorer="https://snowtrace.io/tx/",
        price_feeds=(PriceFeed("AVAX/USD", "0x0A77230d17318075983913bC2145DB16C7366156", ("WAVAX", "AVAX")),),
        protocols=(
            ProtocolConfig(Protocol.RESERVE_POOL, AAVE_V3_POOL, name="Aave V3", assets=(
                _aave("WAVAX", "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7", "0x6d80113e533a2C0fe82EaBD35f1875DcEA89Ea97", "0x4a1c3aD6Ed28a636ee1751C69071f6be75DEb8B8", 18, 35.0),
                _aave("USDC", "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E", "0x625E7708f30cA75bfd92586e17077590C60eb4cD", "0xFCCf3cAbbe80101232d343252614b6A3eE81C989", 6, 1.0),
            )),
        ),
    ),
    "bnb": ChainConfig(
        name="bnb", chain_id=56, rpc_urls=(),
        gas_limit=1_500_000, fallback_gas_gwei=3.0, max_gas_gwei=10.0, priority_fee_gwei=1.0,
        native_symbol="BNB", native_price_usd=600.0,
        quoter_address="0x78D78E420Da98ad378D7799bE8f4AF69033EB077",
        explorer="https://bscscan.com/tx/",
        price_feeds=(PriceFeed("BNB/USD", "0x0567F2323251f0Aab15c8dFb1967E4e8A7D42aeE", ("BNB", "WBNB")),),
        protocols=(
            ProtocolConfig(Protocol.COMPTROLLER, "0xfD36E2c2a6789Db23113685031d7F16329158384", name="Venus Core", assets=(
                _vtoken("BNB", "0xA07c5b74C9B40447a954e1466938b865b6BBea36", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", 600.0),
                _vtoken("USDC", "0xecA88125a5ADbe82614ffC12D0DB554E2e2867C8", "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 1.0),
                _vtoken("USDT", "0xfD5840Cd36d94D7229439859C0112a4185BC0255", "0x55d398326f99059fF775485246999027B3197955", 1.0),
                _vtoken("BTC", "0x882C173bC7Ff3b7786CA16dfeD3DFFfb9Ee7847B", "0x7130d2A12B9BCbFAe4f2634d864A1Ee1Ce3Ead9c", 60000.0),
                _vtoken("ETH", "0xf508fCD89b8bd15579dc79A6827cB4686A3592c8", "0x2170Ed0880ac9A755fd29B2688956BD959F933F8", 3000.0),
            )),
        ),
    ),
}


# --- LOADERS ---

def _env_flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(env: Mapping[str, str], name: str, default, cast=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _split(raw: Optional[str]) -> Tuple[str, ...]:
    return tuple(part.strip() for part in (raw or "").split(",") if part.strip())


def normalize_private_key(key: str) -> str:
    clean = key[2:] if key.startswith("0x") else key
    if len(clean) != 64 or any(c not in "0123456789abcdefABCDEF" for c in clean):
        raise ConfigError("PRIVATE_KEY must be 32 bytes of hex")
    return "0x" + clean


def load_settings(env: Optional[Mapping[str, str]] = None) -> EngineSettings:
    """Builds EngineSettings from the environment. Raises ConfigError on bad values."""
    env = os.environ if env is None else env
    execution_enabled = _env_flag(env, "EXECUTION_ENABLED") and not _env_flag(env, "DRY_RUN")

    private_key = env.get("PRIVATE_KEY") or None
    if private_key:
        private_key = normalize_private_key(private_key)
    elif execution_enabled:
        raise ConfigError("PRIVATE_KEY is required when EXECUTION_ENABLED=true")

    health_port = _env_number(env, "HEALTH_PORT", 3847, int)

    return EngineSettings(
        private_key=private_key,
        execution_enabled=execution_enabled,
        min_profit_usd=_env_number(env, "MIN_PROFIT_USD", 5.0),
        max_gas_gwei=_env_number(env, "MAX_GAS_GWEI", None),
        max_slippage=_env_number(env, "MAX_SLIPPAGE", 0.02),
        min_debt_usd=_env_number(env, "MIN_DEBT_USD", 100.0),
        batch_size=_env_number(env, "BATCH_SIZE", 500, int),
        scan_interval=_env_number(env, "SCAN_INTERVAL", 30.0),
        scan_timeout=_env_number(env, "SCAN_TIMEOUT", 60.0),
        rpc_timeout=_env_number(env, "RPC_TIMEOUT", 20.0),
        confirm_timeout=_env_number(env, "CONFIRM_TIMEOUT", 120.0),
        lock_expiry=_env_number(env, "LOCK_EXPIRY", 120.0),
        discovery_interval=_env_number(env, "DISCOVERY_INTERVAL", 300.0),
        discovery_lookback=_env_number(env, "DISCOVERY_LOOKBACK", 100_000, int),
        stats_interval=_env_number(env, "STATS_INTERVAL", 60.0),
        health_port=health_port or None,
        discord_webhook=env.get("DISCORD_WEBHOOK") or None,
        telegram_bot_token=env.get("TELEGRAM_BOT_TOKEN") or None,
        telegram_chat_id=env.get("TELEGRAM_CHAT_ID") or None,
        db_file=env.get("DB_FILE", "liquidator.db") or None,
        borrowers_file=env.get("BORROWERS_FILE", "data/borrowers.json"),
        liquidators_file=env.get("LIQUIDATORS_FILE", "data/liquidators.json"),
        chains=_split(env.get("CHAINS")),
    )


def load_liquidators(path: str) -> dict:
    """Reads the liquidator contract registry. Missing file means no liquidators."""
    if not os.path.exists(path):
        logger.warning(f"⚠️ Liquidator registry {path} not found. Execution will be skipped.")
        return {}
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def _liquidator_for(chain: str, protocol: Protocol, env: Mapping[str, str], registry: dict) -> Optional[str]:
    prefix = chain.upper()
    if protocol == Protocol.MARKET:
        return env.get(f"{prefix}_COMPOUND_LIQUIDATOR") or (registry.get("compound") or {}).get(chain)
    address = env.get(f"{prefix}_LIQUIDATOR") or registry.get(chain)
    return address if isinstance(address, str) else None


def load_chain_configs(
    settings: EngineSettings,
    env: Optional[Mapping[str, str]] = None,
    liquidators: Optional[dict] = None,
    defaults: Optional[Dict[str, ChainConfig]] = None,
) -> Tuple[Dict[str, ChainConfig], Dict[str, str]]:
    """Returns (valid chain configs, per-chain errors). A bad chain never stops the others."""
    env = os.environ if env is None else env
    liquidators = liquidators or {}
    defaults = DEFAULT_CHAINS if defaults is None else defaults
    wanted = settings.chains or tuple(defaults)

    configs: Dict[str, ChainConfig] = {}
    errors: Dict[str, str] = {}
    for name in wanted:
        base = defaults.get(name)
        if base is None:
            errors[name] = "unknown chain"
            continue
        prefix = name.upper()
        try:
            protocols = tuple(
                replace(p, liquidator=_liquidator_for(name, p.protocol, env, liquidators))
                for p in base.protocols
            )
            max_gas = _env_number(env, f"{prefix}_MAX_GAS_GWEI", settings.max_gas_gwei)
            cfg = replace(
                base,
                rpc_urls=_split(env.get(f"{prefix}_RPC_URL")),
                ws_url=env.get(f"{prefix}_WS_URL") or None,
                protocols=protocols,
                max_gas_gwei=base.max_gas_gwei if max_gas is None else max_gas,
            )
            cfg.validate()
        except ConfigError as e:
            errors[name] = str(e)
            logger.error(f"❌ {name}: excluded ({e})")
            continue
        configs[name] = cfg
    return configs, errors
