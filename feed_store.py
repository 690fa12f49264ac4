# Filename: feed_store.py

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from data_sources import BitqueryClient, RequestCancelled
from models import CancelToken, Category, TokenRecord
from normalizer import normalize_batch
from token_cache import PersistentCache

logger = logging.getLogger("FeedStore")

FeedListener = Callable[[Category, List[TokenRecord]], None]


def dedupe(records: Iterable[TokenRecord]) -> List[TokenRecord]:
    """Keep the first record of every mint, preserving order."""
    seen = set()
    unique = []
    for record in records:
        if record.mint_address in seen:
            continue
        seen.add(record.mint_address)
        unique.append(record)
    return unique


class FeedStore:
    """
    Owns the three token feeds (most recent first).

    A mint appears at most once per feed and the first record wins: later
    events for the same mint are dropped, never merged. Each feed is capped at
    max_size and loses its oldest records first.
    """

    def __init__(self, cache: PersistentCache, client: Optional[BitqueryClient] = None,
                 max_size: int = 100, initial_limit: int = 50):
        self.cache = cache
        self.client = client
        self.max_size = max_size
        self.initial_limit = initial_limit
        self._feeds: Dict[Category, List[TokenRecord]] = {category: [] for category in Category}
        self._listeners: List[FeedListener] = []
        self._mounted: List[CancelToken] = []
        self.stats = {"received": 0, "added": 0, "duplicates_dropped": 0}

    @classmethod
    def from_config(cls, config: Dict[str, Any], cache: PersistentCache,
                    client: Optional[BitqueryClient] = None) -> "FeedStore":
        return cls(
            cache,
            client,
            max_size=int(config.get("FEED_MAX_SIZE", 100)),
            initial_limit=int(config.get("INITIAL_FETCH_LIMIT", 50)),
        )

    def get(self, category: Category) -> List[TokenRecord]:
        return list(self._feeds[category])

    def summary(self) -> Dict[str, int]:
        return {category.value: len(records) for category, records in self._feeds.items()}

    # Reactive state

    def subscribe(self, listener: FeedListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: FeedListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, category: Category) -> None:
        snapshot = self.get(category)
        for listener in list(self._listeners):
            try:
                listener(category, snapshot)
            except Exception as e:
                logger.error(f"[FEED] Listener failed for {category.value}: {e}")

    # View lifecycle

    def mount(self) -> CancelToken:
        token = CancelToken()
        self._mounted.append(token)
        return token

    def unmount(self, token: CancelToken) -> None:
        token.cancel()
        if token in self._mounted:
            self._mounted.remove(token)

    # Persistence

    def _persist(self, category: Category) -> None:
        self.cache.save(category.cache_key, [record.to_dict() for record in self._feeds[category]])

    def _load_cached(self, category: Category) -> List[TokenRecord]:
        raw = self.cache.load(category.cache_key)
        if not isinstance(raw, list):
            return []

        records = []
        for item in raw:
            try:
                record = TokenRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[FEED] Dropping unreadable cached {category.value} record: {e}")
                continue
            if record.category == category:
                records.append(record)
        return dedupe(records)

    # Updates

    def merge_incoming(self, category: Category, records: Iterable[TokenRecord]) -> List[TokenRecord]:
        """
        Prepend the records whose mint is not in the feed yet.

        Args:
            category: Target feed
            records: Normalized records, newest batch order preserved

        Returns:
            The records that were added
        """
        feed = self._feeds[category]
        existing = {record.mint_address for record in feed}
        added = []

        for record in records:
            self.stats["received"] += 1
            if record.category != category:
                logger.warning(f"[FEED] {record.mint_address} belongs to {record.category.value}, "
                               f"not {category.value}; dropped")
                continue
            if record.mint_address in existing:
                self.stats["duplicates_dropped"] += 1
                continue
            existing.add(record.mint_address)
            added.append(record)

        if not added:
            return []

        self._feeds[category] = (added + feed)[:self.max_size]
        self.stats["added"] += len(added)
        self._persist(category)
        self._notify(category)
        logger.debug(f"[FEED] {category.value}: +{len(added)} (size {len(self._feeds[category])})")
        return added

    def _seed(self, category: Category, records: Iterable[TokenRecord]) -> None:
        """Append snapshot records behind whatever was already streamed in."""
        feed = self._feeds[category]
        existing = {record.mint_address for record in feed}
        tail = [record for record in dedupe(records)
                if record.category == category and record.mint_address not in existing]
        self._feeds[category] = (feed + tail)[:self.max_size]
        self._notify(category)

    def handle_stream_data(self, feed_id: str, data: Dict[str, Any]) -> None:
        """Callback for the subscription multiplexer."""
        try:
            category = Category(feed_id)
        except ValueError:
            logger.warning(f"[FEED] Data for unknown feed {feed_id} ignored")
            return

        records = normalize_batch(category, data)
        if records:
            self.merge_incoming(category, records)

    async def load_initial(self, category: Category, cancel_token: Optional[CancelToken] = None) -> List[TokenRecord]:
        """
        Seed a feed from the local cache or, when the cache is stale or empty,
        from a one-time bulk fetch.

        Results that arrive after cancel_token was cancelled are discarded.
        """
        if not self.cache.is_stale():
            cached = self._load_cached(category)
            if cached:
                self._seed(category, cached)
                logger.info(f"[FEED] {category.value}: restored {len(cached)} records from cache")
                return self.get(category)

        if self.client is None:
            logger.warning(f"[FEED] {category.value}: no client configured, skipping initial fetch")
            return self.get(category)

        try:
            fetched = await self.client.fetch_initial(category, self.initial_limit, cancel_token)
        except RequestCancelled:
            logger.info(f"[FEED] {category.value}: initial fetch cancelled")
            return []

        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"[FEED] {category.value}: late initial fetch result discarded")
            return []

        self._seed(category, fetched)
        self._persist(category)
        return self.get(category)

    async def load_all(self, cancel_token: Optional[CancelToken] = None) -> Dict[Category, List[TokenRecord]]:
        """Load the three feeds in parallel; one failing feed does not affect the others."""
        if self.cache.is_stale():
            # Stale data must not come back once a later write refreshes the timestamp
            self.cache.clear_all()

        categories = list(Category)
        results = await asyncio.gather(
            *(self.load_initial(category, cancel_token) for category in categories),
            return_exceptions=True
        )

        loaded = {}
        for category, result in zip(categories, results):
            if isinstance(result, Exception):
                logger.error(f"[FEED] Initial load failed for {category.value}: {result}")
                loaded[category] = self.get(category)
            else:
                loaded[category] = result
        return loaded
