"""
When to scan.

Every chain gets its own loop fed by a trigger queue. The periodic timer and
oracle price events both land on that queue, so a chain never runs two scans
at once and triggers that pile up during a scan collapse into one follow-up.
"""
import json
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

import websockets
from eth_abi import decode

from chain_registry import ChainContext, TransientRPCError
from config import PriceFeed
from models import Stats

logger = logging.getLogger("Liquidator")

IDLE = "idle"
SCANNING = "scanning"
PERIODIC = "periodic"

ScanFn = Callable[[str, str], Awaitable[object]]


class ChainScanLoop:
    def __init__(self, chain: str, scan: ScanFn, interval: float = 30.0,
                 scan_timeout: float = 60.0, max_backoff: float = 300.0):
        self.chain = chain
        self.scan = scan
        self.interval = interval
        self.scan_timeout = scan_timeout
        self.max_backoff = max_backoff
        self.queue: asyncio.Queue = asyncio.Queue()
        self.state = IDLE
        self.failures = 0
        self.scans = 0
        self.coalesced = 0
        self.last_scan_at: Optional[float] = None

    def trigger(self, reason: str):
        self.queue.put_nowait(reason)

    def next_delay(self) -> float:
        if self.failures == 0:
            return self.interval
        return min(self.interval * (2 ** self.failures), self.max_backoff)

    def _drain(self) -> int:
        drained = 0
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            drained += 1

    async def _next_trigger(self, stop: asyncio.Event) -> Optional[str]:
        """The next queued trigger, PERIODIC when the timer runs out, None on stop."""
        if not self.queue.empty():
            return self.queue.get_nowait()
        get_task = asyncio.ensure_future(self.queue.get())
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({get_task, stop_task}, timeout=self.next_delay(),
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get_task, stop_task):
                if not task.done():
                    task.cancel()
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        if stop.is_set():
            return None
        return PERIODIC

    async def run_once(self, reason: str) -> bool:
        """One guarded scan. Returns True on success."""
        self.state = SCANNING
        started = time.time()
        try:
            await asyncio.wait_for(self.scan(self.chain, reason), timeout=self.scan_timeout)
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"⏱️ [{self.chain}] Scan ({reason}) timed out after {self.scan_timeout}s. Next periodic in {self.next_delay():.0f}s")
            return False
        except TransientRPCError as e:
            self.failures += 1
            logger.warning(f"⚠️ [{self.chain}] Scan ({reason}) skipped: {e}. Next periodic in {self.next_delay():.0f}s")
            return False
        except Exception as e:
            self.failures += 1
            logger.error(f"❌ [{self.chain}] Scan ({reason}) failed: {e}")
            return False
        finally:
            self.state = IDLE
            self.scans += 1
            self.last_scan_at = started
        self.failures = 0
        return True

    async def run(self, stop: asyncio.Event):
        logger.info(f"⏰ [{self.chain}] Scan loop started (every {self.interval:.0f}s + oracle events)")
        while not stop.is_set():
            reason = await self._next_trigger(stop)
            if reason is None:
                break
            extra = self._drain()
            if extra:
                self.coalesced += extra
                logger.debug(f"[{self.chain}] Coalesced {extra} trigger(s) into this scan")
            await self.run_once(reason)
        logger.info(f"🛑 [{self.chain}] Scan loop stopped")


class TriggerScheduler:
    """Owns one ChainScanLoop per chain and routes triggers to them."""

    def __init__(self, scan: ScanFn, interval: float = 30.0, scan_timeout: float = 60.0,
                 max_backoff: float = 300.0):
        self.scan = scan
        self.interval = interval
        self.scan_timeout = scan_timeout
        self.max_backoff = max_backoff
        self.loops: Dict[str, ChainScanLoop] = {}

    def add_chain(self, chain: str) -> ChainScanLoop:
        loop = ChainScanLoop(chain, self.scan, self.interval, self.scan_timeout, self.max_backoff)
        self.loops[chain] = loop
        return loop

    def trigger(self, chain: str, reason: str) -> bool:
        loop = self.loops.get(chain)
        if loop is None:
            return False
        loop.trigger(reason)
        return True

    def states(self) -> Dict[str, dict]:
        return {
            chain: {
                "state": loop.state,
                "scans": loop.scans,
                "coalesced": loop.coalesced,
                "failures": loop.failures,
                "last_scan_at": loop.last_scan_at,
            }
            for chain, loop in self.loops.items()
        }

    async def run(self, stop: asyncio.Event):
        await asyncio.gather(*(loop.run(stop) for loop in self.loops.values()))


# --- ORACLE EVENTS ---

# AnswerUpdated(int256 indexed current, uint256 indexed roundId, uint256 updatedAt)
ANSWER_UPDATED_TOPIC = "0x0559884fd3a460db3073b7fc896cc77986f16e378210ded43186175bf646fc5f"

FEED_ABI = [
    {"inputs":[],"name":"latestRoundData","outputs":[{"name":"roundId","type":"uint80"},{"name":"answer","type":"int256"},{"name":"startedAt","type":"uint256"},{"name":"updatedAt","type":"uint256"},{"name":"answeredInRound","type":"uint80"}],"stateMutability":"view","type":"function"},
    {"inputs":[],"name":"aggregator","outputs":[{"name":"","type":"address"}],"stateMutability":"view","type":"function"},
]

FEED_DECIMALS = 8


def _topic_bytes(topic) -> bytes:
    if isinstance(topic, (bytes, bytearray)):
        return bytes(topic)
    return bytes.fromhex(topic[2:] if topic.startswith("0x") else topic)


class OracleListener:
    """
    Subscribes to Chainlink AnswerUpdated logs over the chain's websocket and
    turns each one into a price update plus a scan trigger.
    """

    def __init__(self, ctx: ChainContext, scheduler: TriggerScheduler, stats: Stats,
                 max_backoff: float = 60.0):
        self.ctx = ctx
        self.scheduler = scheduler
        self.stats = stats
        self.max_backoff = max_backoff
        self.sources: Dict[str, PriceFeed] = {}
        self.connected = False

    @property
    def addresses(self) -> List[str]:
        return sorted(set(self.sources))

    async def prime(self):
        """Initial prices, and the aggregator behind each proxy (which is what emits the event)."""
        for feed in self.ctx.config.price_feeds:
            self.sources[feed.address.lower()] = feed
            proxy = self.ctx.contract(feed.address, FEED_ABI)
            try:
                round_data = await asyncio.wait_for(proxy.functions.latestRoundData().call(), timeout=self.ctx.rpc_timeout)
                price = round_data[1] / 10 ** FEED_DECIMALS
                self.ctx.set_price(feed.symbols, price)
                logger.info(f"   ✅ {self.ctx.name} {feed.name}: ${price:,.2f}")
            except Exception as e:
                logger.warning(f"   ❌ {self.ctx.name} {feed.name}: price read failed ({e})")
            try:
                aggregator = await asyncio.wait_for(proxy.functions.aggregator().call(), timeout=self.ctx.rpc_timeout)
                self.sources[aggregator.lower()] = feed
            except Exception as e:
                logger.warning(f"⚠️ [{self.ctx.name}] {feed.name} aggregator lookup failed, listening on proxy: {e}")

    def handle_log(self, log: dict) -> bool:
        """Applies one AnswerUpdated log. Returns True if it triggered a scan."""
        if log.get("removed"):
            return False
        feed = self.sources.get(str(log.get("address", "")).lower())
        topics = log.get("topics") or []
        if feed is None or not isinstance(topics, list) or len(topics) < 2:
            return False
        try:
            if _topic_bytes(topics[0]) != _topic_bytes(ANSWER_UPDATED_TOPIC):
                return False
            answer = decode(['int256'], _topic_bytes(topics[1]))[0]
        except Exception as e:
            logger.warning(f"⚠️ [{self.ctx.name}] Undecodable oracle log: {e}")
            return False

        price = answer / 10 ** FEED_DECIMALS
        self.ctx.set_price(feed.symbols, price)
        self.stats.incr("events")
        logger.info(f"📡 [{self.ctx.name}] {feed.name} → ${price:,.2f}")
        return self.scheduler.trigger(self.ctx.name, f"oracle {feed.name}")

    def notification(self, message) -> Optional[dict]:
        """The log carried by one subscription message, None for anything else."""
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning(f"⚠️ [{self.ctx.name}] Unparseable oracle message skipped")
            return None
        if not isinstance(data, dict) or data.get("method") != "eth_subscription":
            return None
        params = data.get("params")
        log = params.get("result") if isinstance(params, dict) else None
        if not isinstance(log, dict):
            logger.warning(f"⚠️ [{self.ctx.name}] Oracle notification without a log skipped: {str(data)[:200]}")
            return None
        return log

    async def run(self, stop: asyncio.Event):
        url = self.ctx.config.ws_url
        if not self.ctx.config.price_feeds:
            return
        await self.prime()
        if not url:
            return
        backoff = 1.0
        while not stop.is_set():
            try:
                async with websockets.connect(url, ping_interval=20, ping_timeout=20) as ws:
                    sub_msg = {
                        "jsonrpc": "2.0", "id": 1, "method": "eth_subscribe",
                        "params": ["logs", {"address": self.addresses, "topics": [ANSWER_UPDATED_TOPIC]}],
                    }
                    await ws.send(json.dumps(sub_msg))
                    response = json.loads(await ws.recv())
                    if not isinstance(response, dict) or "error" in response:
                        raise ValueError(f"subscription rejected: {response}")
                    logger.info(f"🎧 [{self.ctx.name}] Oracle subscription active ({len(self.addresses)} sources)")
                    self.connected = True
                    backoff = 1.0

                    while not stop.is_set():
                        log = self.notification(await ws.recv())
                        if log is not None:
                            self.handle_log(log)
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError, ValueError) as e:
                self.connected = False
                logger.warning(f"⚠️ [{self.ctx.name}] Oracle stream dropped: {e}. Reconnecting in {backoff:.0f}s")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                backoff = min(backoff * 2, self.max_backoff)
        self.connected = False
