import os
import json
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import aiofiles
from web3 import AsyncWeb3

from chain_registry import ChainContext, TransientRPCError
from models import Protocol, Stats

logger = logging.getLogger("Liquidator")

GroupKey = Tuple[str, Protocol, str]

MIN_LOG_CHUNK = 50


def checksum(address) -> Optional[str]:
    try:
        return AsyncWeb3.to_checksum_address(address)
    except (ValueError, TypeError):
        return None


class BorrowerRegistry:
    """Candidate borrowers per (chain, protocol, market). Grows, never shrinks."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._entries: Dict[GroupKey, List[str]] = {}
        self._seen: Dict[GroupKey, Set[str]] = {}
        self.dirty = False

    # --- mutation ---

    def add_borrowers(self, chain: str, protocol: Protocol, market: str, addresses: Iterable) -> int:
        """Adds new addresses, deduplicated by checksummed address. Returns how many were new."""
        market = checksum(market) or market
        key = (chain, Protocol(protocol), market)
        entries = self._entries.setdefault(key, [])
        seen = self._seen.setdefault(key, set())
        added = 0
        for raw in addresses:
            address = checksum(raw)
            if address is None:
                logger.warning(f"⚠️ Ignoring malformed borrower address {raw!r} on {chain}")
                continue
            if address in seen:
                continue
            seen.add(address)
            entries.append(address)
            added += 1
        if added:
            self.dirty = True
        return added

    # --- queries ---

    def borrowers(self, chain: str, protocol: Protocol, market: str) -> List[str]:
        return list(self._entries.get((chain, Protocol(protocol), checksum(market) or market), []))

    def groups(self, chain: str) -> Dict[Tuple[Protocol, str], List[str]]:
        return {(p, m): list(users) for (c, p, m), users in self._entries.items() if c == chain}

    def count(self, chain: Optional[str] = None) -> int:
        return sum(len(users) for (c, _, _), users in self._entries.items() if chain in (None, c))

    def chains(self) -> List[str]:
        return sorted({c for c, _, _ in self._entries})

    # --- persistence ---

    def to_json(self) -> dict:
        data: Dict[str, list] = {}
        for (chain, protocol, market), users in self._entries.items():
            data.setdefault(chain, []).extend(
                {"protocol": protocol.value, "market": market, "address": u} for u in users
            )
        return data

    def load_data(self, data: dict, legacy_markets: Optional[Mapping[str, str]] = None) -> int:
        """Merges a store snapshot. Bare `{user}` / string entries are legacy reserve-pool rows."""
        if not isinstance(data, dict):
            raise ValueError("borrower store must be a JSON object keyed by chain")
        legacy_markets = legacy_markets or {}
        added = 0
        for raw_chain, rows in data.items():
            chain = raw_chain.lower()
            if not isinstance(rows, list):
                logger.warning(f"⚠️ Skipping borrower rows for {raw_chain}: not a list")
                continue
            for row in rows:
                if isinstance(row, dict) and "protocol" in row:
                    try:
                        protocol = Protocol(row["protocol"])
                    except ValueError:
                        logger.warning(f"⚠️ Unknown protocol {row.get('protocol')!r} for {chain}")
                        continue
                    added += self.add_borrowers(chain, protocol, row.get("market", ""), [row.get("address")])
                    continue
                address = row.get("user") if isinstance(row, dict) else row
                market = legacy_markets.get(chain)
                if market is None:
                    continue
                added += self.add_borrowers(chain, Protocol.RESERVE_POOL, market, [address])
        return added

    def load_legacy_markets(self, data: dict, comet_markets: Mapping[str, Mapping[str, str]]) -> int:
        """Imports `{chain: {marketSymbol: [users]}}` comet rows."""
        added = 0
        for raw_chain, markets in (data or {}).items():
            chain = raw_chain.lower()
            for symbol, users in (markets or {}).items():
                comet = (comet_markets.get(chain) or {}).get(symbol)
                if comet is None:
                    logger.warning(f"⚠️ No comet market {symbol} on {chain}, skipping {len(users)} borrowers")
                    continue
                added += self.add_borrowers(chain, Protocol.MARKET, comet, users)
        return added

    async def load(self, legacy_markets=None, legacy_path=None, comet_markets=None) -> int:
        added = 0
        for path, loader in ((self.path, "store"), (legacy_path, "comet")):
            if not path or not os.path.exists(path):
                continue
            try:
                async with aiofiles.open(path, mode='r') as f:
                    content = await f.read()
                if not content:
                    continue
                data = json.loads(content)
                if loader == "store":
                    added += self.load_data(data, legacy_markets)
                else:
                    added += self.load_legacy_markets(data, comet_markets or {})
            except (ValueError, OSError) as e:
                logger.warning(f"⚠️ Failed to load borrowers from {path}: {e}")
        self.dirty = False
        logger.info(f"📚 Loaded {self.count()} borrowers across {len(self.chains())} chain(s)")
        return added

    async def save(self):
        """Atomic write: temp file then rename."""
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        temp_path = self.path + ".tmp"
        async with aiofiles.open(temp_path, mode='w') as f:
            await f.write(json.dumps(self.to_json(), indent=2))
        os.replace(temp_path, self.path)
        self.dirty = False


# --- DISCOVERY ---

def topic_address(topic) -> str:
    raw = bytes(topic) if isinstance(topic, (bytes, bytearray)) else bytes.fromhex(topic[2:] if topic.startswith("0x") else topic)
    return AsyncWeb3.to_checksum_address("0x" + raw[-20:].hex())


class BorrowerDiscovery:
    """Grows the registry from protocol borrow events, resuming where it stopped."""

    def __init__(self, registry: BorrowerRegistry, stats: Stats,
                 lookback: int = 100_000, chunk_size: int = 2_000):
        self.registry = registry
        self.stats = stats
        self.lookback = lookback
        self.chunk_size = chunk_size
        self.last_block: Dict[Tuple[str, str], int] = {}

    async def discover(self, ctx: ChainContext, adapter) -> int:
        discovery = adapter.discovery_topic()
        if discovery is None:
            return 0
        topic, borrower_index = discovery
        key = (ctx.name, adapter.market)

        current_block = await ctx.block_number()
        chunk_start = self.last_block.get(key, max(0, current_block - self.lookback) - 1) + 1
        size = self.chunk_size
        found: Set[str] = set()

        while chunk_start <= current_block:
            chunk_end = min(chunk_start + size - 1, current_block)
            try:
                logs = await ctx.get_logs({
                    'fromBlock': hex(chunk_start),
                    'toBlock': hex(chunk_end),
                    'address': adapter.market,
                    'topics': [topic],
                })
            except TransientRPCError as e:
                if size > MIN_LOG_CHUNK:
                    size = max(MIN_LOG_CHUNK, size // 2)
                    logger.warning(f"⚠️ [{ctx.name}] Chunk {chunk_start}-{chunk_end} failed: {e}. Shrinking to {size}")
                    continue
                logger.warning(f"⚠️ [{ctx.name}] Discovery stopped at block {chunk_start}: {e}")
                break
            for log in logs:
                topics = log['topics']
                if len(topics) > borrower_index:
                    found.add(topic_address(topics[borrower_index]))
            self.last_block[key] = chunk_end
            chunk_start = chunk_end + 1
            size = self.chunk_size

        added = self.registry.add_borrowers(ctx.name, adapter.protocol, adapter.market, sorted(found))
        if added:
            self.stats.incr("discovered", added)
        total = len(self.registry.borrowers(ctx.name, adapter.protocol, adapter.market))
        logger.info(f"🔍 [{ctx.name}] {adapter.name}: +{added} new borrowers ({total} total)")
        return added
