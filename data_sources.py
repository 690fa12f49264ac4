"""
Data sources for the Pulse feed client.
HTTP access to Bitquery (feed snapshots, token lookups), CoinGecko (SOL price)
and the off-chain metadata referenced by token uris.
"""

import asyncio
import dataclasses
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from models import (
    CancelToken,
    Category,
    OHLCVCandle,
    SolPrice,
    TokenInfo,
    TokenRecord,
    TradingPair,
    UriMetadata,
)
from normalizer import normalize_batch
from queries import INITIAL_QUERIES, OHLCV_QUERY, TOKEN_INFO_QUERY, TRADING_PAIRS_QUERY

logger = logging.getLogger("data_sources")


class BitqueryError(Exception):
    """Bitquery answered with an HTTP error or a GraphQL errors list"""


class RequestCancelled(Exception):
    """The caller's cancel token was set before the request completed"""


class _TTLCacheMixin:
    """Small in-memory cache with a per-entry time-to-live"""

    def _init_cache(self):
        self.token_cache: Dict[str, Dict[str, Any]] = {}  # {key: {timestamp, ttl, data}}

    def _get_from_cache(self, key: str) -> Any:
        """
        Return a cached value

        Args:
            key: Cache key

        Returns:
            The value, or None if missing or expired
        """
        if key not in self.token_cache:
            return None

        cache_entry = self.token_cache[key]
        if time.time() - cache_entry["timestamp"] > cache_entry["ttl"]:
            # Expired
            del self.token_cache[key]
            return None

        return cache_entry["data"]

    def _add_to_cache(self, key: str, data: Any, ttl: float) -> None:
        """
        Store a value in the cache

        Args:
            key: Cache key
            data: Value to cache
            ttl: Lifetime in seconds
        """
        self.token_cache[key] = {
            "timestamp": time.time(),
            "ttl": ttl,
            "data": data
        }


class BitqueryClient(_TTLCacheMixin):
    """
    GraphQL-over-HTTP client for Bitquery.

    A session may be injected (tests, long-lived apps); otherwise a short-lived
    aiohttp session is opened per request.
    """

    TOKEN_INFO_TTL = 10 * 60
    TRADING_PAIRS_TTL = 5 * 60
    OHLCV_TTL = 15
    SOL_PRICE_TTL = 60

    def __init__(self, config: Dict[str, Any], session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.session = session
        self.endpoint = config.get("BITQUERY_HTTP_URL", "https://streaming.bitquery.io/eap")
        self.api_token = config.get("BITQUERY_TOKEN", "")
        self.price_url = config.get("COINGECKO_PRICE_URL", "https://api.coingecko.com/api/v3/simple/price")
        self.timeout = aiohttp.ClientTimeout(total=float(config.get("HTTP_TIMEOUT_SECONDS", 10)))
        self._init_cache()

        logger.info(f"Initialized BitqueryClient for {self.endpoint}")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _post(self, session, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(self.endpoint, json=payload, headers=self._headers()) as response:
            if response.status != 200:
                text = await response.text()
                raise BitqueryError(f"HTTP {response.status}: {text[:200]}")
            return await response.json(content_type=None)

    async def query(self, document: str, variables: Optional[Dict[str, Any]] = None,
                    cancel_token: Optional[CancelToken] = None) -> Dict[str, Any]:
        """
        Run a GraphQL query

        Args:
            document: GraphQL query document
            variables: Query variables
            cancel_token: Aborts the request when cancelled

        Returns:
            The "data" object of the response
        """
        if cancel_token is not None and cancel_token.cancelled:
            raise RequestCancelled("request cancelled before sending")

        payload = {"query": document, "variables": variables or {}}
        try:
            if self.session is not None:
                body = await self._post(self.session, payload)
            else:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    body = await self._post(session, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BitqueryError(f"Bitquery request failed: {e}") from e
        except ValueError as e:
            raise BitqueryError(f"Invalid JSON from Bitquery: {e}") from e

        if cancel_token is not None and cancel_token.cancelled:
            raise RequestCancelled("request cancelled while in flight")

        if not isinstance(body, dict):
            raise BitqueryError("Invalid response format")

        if body.get("errors"):
            messages = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err)
                                 for err in body["errors"])
            raise BitqueryError(messages)

        return body.get("data") or {}

    async def fetch_initial(self, category: Category, limit: int = 50,
                            cancel_token: Optional[CancelToken] = None) -> List[TokenRecord]:
        """Bulk snapshot of the most recent qualifying records of a feed."""
        data = await self.query(INITIAL_QUERIES[category], {"limit": limit}, cancel_token)
        records = normalize_batch(category, data)
        logger.info(f"Fetched {len(records)} initial {category.value} records")
        return records[:limit]

    async def fetch_token_info(self, mint_address: str) -> Optional[TokenInfo]:
        cache_key = f"token_info_{mint_address}"
        cached = self._get_from_cache(cache_key)
        if cached:
            return cached

        try:
            data = await self.query(TOKEN_INFO_QUERY, {"mintAddress": mint_address})
            updates = (data.get("Solana") or {}).get("TokenSupplyUpdates") or []
            if not updates:
                return None

            update = updates[0]
            currency = update["TokenSupplyUpdate"]["Currency"]
            info = TokenInfo(
                mint_address=currency.get("MintAddress") or mint_address,
                name=currency.get("Name") or "",
                symbol=currency.get("Symbol") or "",
                decimals=int(currency.get("Decimals") or 0),
                uri=currency.get("Uri") or "",
                created_at=(update.get("Block") or {}).get("Time") or "",
                creator=(update.get("Transaction") or {}).get("Signer") or "",
            )
        except (BitqueryError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error fetching token info for {mint_address}: {e}")
            return None

        self._add_to_cache(cache_key, info, self.TOKEN_INFO_TTL)
        return info

    async def fetch_trading_pairs(self, mint_address: str) -> List[TradingPair]:
        cache_key = f"pairs_{mint_address}"
        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return cached

        try:
            data = await self.query(TRADING_PAIRS_QUERY, {"mintAddress": mint_address})
            pairs = [
                TradingPair(
                    market_address=row["Trade"]["Market"]["MarketAddress"],
                    protocol_name=row["Trade"]["Dex"].get("ProtocolName") or "",
                    protocol_family=row["Trade"]["Dex"].get("ProtocolFamily") or "",
                    program_address=row["Trade"]["Dex"].get("ProgramAddress") or "",
                    trade_count=int(row.get("count") or 0),
                )
                for row in (data.get("Solana") or {}).get("DEXTradeByTokens") or []
            ]
        except (BitqueryError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error fetching trading pairs for {mint_address}: {e}")
            return []

        self._add_to_cache(cache_key, pairs, self.TRADING_PAIRS_TTL)
        return pairs

    async def fetch_ohlcv(self, mint_address: str, limit: int = 240) -> List[OHLCVCandle]:
        """
        15-second candles for a token, oldest first

        Args:
            mint_address: Token mint
            limit: Maximum number of candles

        Returns:
            List of candles, empty on error
        """
        cache_key = f"ohlcv_{mint_address}_{limit}"
        cached = self._get_from_cache(cache_key)
        if cached is not None:
            return cached

        try:
            data = await self.query(OHLCV_QUERY, {"mintAddress": mint_address, "limit": limit})
            candles = [
                OHLCVCandle(
                    time=row["Block"]["Timefield"],
                    open=float(row["Trade"]["open"] or 0),
                    high=float(row["Trade"]["high"] or 0),
                    low=float(row["Trade"]["low"] or 0),
                    close=float(row["Trade"]["close"] or 0),
                    volume=float(row.get("volume") or 0),
                    count=int(row.get("count") or 0),
                )
                for row in (data.get("Solana") or {}).get("DEXTradeByTokens") or []
            ]
        except (BitqueryError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error fetching OHLCV data for {mint_address}: {e}")
            return []

        # Bitquery returns newest first
        candles.reverse()
        self._add_to_cache(cache_key, candles, self.OHLCV_TTL)
        return candles

    async def _get_price(self, session, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        async with session.get(self.price_url, params=params) as response:
            if response.status != 200:
                logger.error(f"Error fetching SOL price: {response.status}")
                return None
            return await response.json(content_type=None)

    async def fetch_sol_price(self) -> SolPrice:
        cached = self._get_from_cache("sol_price")
        if cached:
            return cached

        params = {"ids": "solana", "vs_currencies": "usd", "include_24hr_change": "true"}
        try:
            if self.session is not None:
                data = await self._get_price(self.session, params)
            else:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    data = await self._get_price(session, params)
            if data is None:
                return SolPrice()
            price = SolPrice(
                price=float(data["solana"]["usd"]),
                price_change_24h=float(data["solana"].get("usd_24h_change") or 0),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to fetch SOL price: {e}")
            return SolPrice()

        self._add_to_cache("sol_price", price, self.SOL_PRICE_TTL)
        return price


class MetadataResolver(_TTLCacheMixin):
    """
    Lazily resolves off-chain metadata for token uris.
    Failures mean "no metadata": callers keep their placeholder values.
    """

    CACHE_KEY = "metadata"

    def __init__(self, config: Dict[str, Any], cache=None, session: Optional[aiohttp.ClientSession] = None):
        self.cache = cache
        self.session = session
        self.ttl = float(config.get("METADATA_CACHE_TTL_SECONDS", 3600))
        self.timeout = aiohttp.ClientTimeout(total=float(config.get("HTTP_TIMEOUT_SECONDS", 10)))
        self._init_cache()

    async def _get_json(self, session, uri: str) -> Optional[Dict[str, Any]]:
        async with session.get(uri) as response:
            if response.status != 200:
                logger.warning(f"Metadata fetch for {uri} returned HTTP {response.status}")
                return None
            return await response.json(content_type=None)

    def _load_persisted(self, uri: str) -> Optional[UriMetadata]:
        if self.cache is None or self.cache.is_stale():
            return None
        stored = self.cache.load(self.CACHE_KEY) or {}
        if not isinstance(stored, dict) or not isinstance(stored.get(uri), dict):
            return None
        # Unknown keys (older layouts, hand edits) are ignored
        known = {f.name for f in dataclasses.fields(UriMetadata)}
        return UriMetadata(**{k: v for k, v in stored[uri].items() if k in known})

    def _persist(self, uri: str, metadata: UriMetadata) -> None:
        if self.cache is None:
            return
        stored = self.cache.load(self.CACHE_KEY)
        if not isinstance(stored, dict):
            stored = {}
        stored[uri] = dataclasses.asdict(metadata)
        self.cache.save(self.CACHE_KEY, stored)

    async def resolve(self, uri: str) -> Optional[UriMetadata]:
        if not uri:
            return None

        cached = self._get_from_cache(uri)
        if cached is not None:
            return cached

        persisted = self._load_persisted(uri)
        if persisted is not None:
            self._add_to_cache(uri, persisted, self.ttl)
            return persisted

        try:
            if self.session is not None:
                data = await self._get_json(self.session, uri)
            else:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    data = await self._get_json(session, uri)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Error fetching token metadata from {uri}: {e}")
            return None

        if not isinstance(data, dict):
            return None

        metadata = UriMetadata.from_json(data)
        self._add_to_cache(uri, metadata, self.ttl)
        self._persist(uri, metadata)
        return metadata

    @staticmethod
    def enhance(record: TokenRecord, metadata: Optional[UriMetadata]) -> TokenRecord:
        """Display copy of a record with resolved name and symbol; the stored record is untouched."""
        if metadata is None:
            return record
        return dataclasses.replace(
            record,
            name=metadata.name or record.name,
            symbol=metadata.symbol or record.symbol,
        )
