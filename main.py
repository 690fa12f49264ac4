# Filename: main.py

import asyncio
import logging
from typing import Any, Dict, Optional

from config import load_config
from data_sources import BitqueryClient, MetadataResolver
from feed_store import FeedStore
from models import CancelToken
from order_routing import JupiterRouter
from queries import SUBSCRIPTIONS
from token_cache import PersistentCache
from websocket_listener import SubscriptionMultiplexer

logger = logging.getLogger("Main")


class PulseApp:
    """
    Composition root: builds the one connection manager and the shared
    services, and hands the same instances to every consumer.
    """

    def __init__(self, config: Dict[str, Any], multiplexer: Optional[SubscriptionMultiplexer] = None,
                 client: Optional[BitqueryClient] = None):
        self.config = config
        self.cache = PersistentCache(
            cache_file=config["CACHE_FILE"],
            namespace=config["CACHE_NAMESPACE"],
            ttl_seconds=float(config["CACHE_TTL_SECONDS"]),
        )
        self.client = client or BitqueryClient(config)
        self.store = FeedStore.from_config(config, self.cache, self.client)
        self.metadata = MetadataResolver(config, cache=self.cache)
        self.router = JupiterRouter(config)
        self.multiplexer = multiplexer or SubscriptionMultiplexer.from_config(config, SUBSCRIPTIONS)
        self._view_token: Optional[CancelToken] = None

    async def start(self) -> None:
        self._view_token = self.store.mount()
        loaded = await self.store.load_all(self._view_token)
        for category, records in loaded.items():
            logger.info(f"📥 {category.value}: {len(records)} records ready")
        self.multiplexer.connect(self.store.handle_stream_data)

    async def stop(self) -> None:
        if self._view_token is not None:
            self.store.unmount(self._view_token)
            self._view_token = None
        await self.multiplexer.disconnect()

    def summary(self) -> str:
        sizes = self.store.summary()
        stats = self.multiplexer.get_stats()
        return (
            f"📊 Pulse feeds | new: {sizes['new-pairs']} | final stretch: {sizes['final-stretch']} | "
            f"migrated: {sizes['migrated']} | socket: {stats['state']} | frames: {stats['frames_received']}"
        )


async def run(config: Dict[str, Any]) -> None:
    app = PulseApp(config)
    interval = float(config.get("SUMMARY_INTERVAL_SECONDS", 60))
    await app.start()
    try:
        while True:
            await asyncio.sleep(interval)
            logger.info(app.summary())
    finally:
        logger.info("🛑 Closing stream...")
        await app.stop()


def main():
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, str(config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )
    logger.info("🚀 Starting Pulse feed client...")

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("❌ Stopped by user.")


if __name__ == "__main__":
    main()
