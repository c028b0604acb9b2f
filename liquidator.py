import sys
import signal
import asyncio
import logging

import db_manager
from borrower_registry import BorrowerRegistry
from chain_registry import ChainRegistry
from config import ConfigError, load_chain_configs, load_liquidators, load_settings
from engine import LiquidationEngine, legacy_market_maps
from models import Stats
from notifier import Notifier

# --- LOGGING SETUP ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s | %(levelname)s | %(message)s')
logger = logging.getLogger("Liquidator")


async def build_engine() -> LiquidationEngine:
    settings = load_settings()
    liquidators = load_liquidators(settings.liquidators_file)
    configs, errors = load_chain_configs(settings, liquidators=liquidators)
    for chain, reason in errors.items():
        logger.warning(f"⚠️ Chain {chain} excluded: {reason}")
    if not configs:
        raise ConfigError("no usable chains configured")

    registry = await ChainRegistry.build(configs, settings, errors)

    pools, comets = legacy_market_maps(configs)
    borrowers = BorrowerRegistry(settings.borrowers_file)
    await borrowers.load(legacy_markets=pools, legacy_path=settings.legacy_compound_file, comet_markets=comets)

    db_enabled = bool(settings.db_file)
    if db_enabled:
        db_manager.configure(settings.db_file)

    notifier = Notifier(settings.discord_webhook, settings.telegram_bot_token, settings.telegram_chat_id)
    if not notifier.enabled:
        logger.info("🔕 No Discord/Telegram configured, alerts go to the log only")

    return LiquidationEngine(settings, registry, borrowers, notifier, Stats(), db_enabled=db_enabled)


async def main():
    engine = await build_engine()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.stop)
        except (NotImplementedError, RuntimeError):
            pass
    await engine.run()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Liquidator Stopped.")
    except ConfigError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
