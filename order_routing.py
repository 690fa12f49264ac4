"""
Jupiter quote and swap-build client for the Pulse feed client.
Prices a swap and returns the unsigned transaction; signing stays with the wallet.
"""

import asyncio
import base64
import json
import logging
import time
from typing import Any, Dict, Optional

import requests
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from models import SwapTransaction
from queries import WSOL_MINT

logger = logging.getLogger("order_routing")

LAMPORTS_PER_SOL = 1_000_000_000
MIN_BUY_AMOUNT_SOL = 0.001

# Known aggregator error substrings -> message shown to the user
KNOWN_ERRORS = (
    ("no route found", "No trading route found for this token. It might not be tradeable on Jupiter yet."),
    ("could_not_find_any_route", "No trading route found for this token. It might not be tradeable on Jupiter yet."),
    ("missing token program", "Token not available for trading on Jupiter. It might be too new or not have enough liquidity."),
    ("simple amms are not supported", "Trading route not available for this token pair."),
    ("token_not_tradable", "Token not supported for trading on Jupiter."),
    ("not supported", "Token not supported for trading on Jupiter."),
    ("insufficient", "Insufficient balance to complete this swap."),
    ("cannot compute other amount threshold", "Could not compute a price threshold for this amount. Try a different amount."),
)


class SwapError(Exception):
    """A quote or swap-build request failed; the message is safe to show to the user."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def describe_swap_error(raw: str, default: str = "Swap request failed") -> str:
    """
    Turn an aggregator error body into a readable message

    Args:
        raw: Response text (JSON or plain text)
        default: Message used when nothing better is available

    Returns:
        Human readable message
    """
    detail = raw or ""
    try:
        body = json.loads(raw)
        if isinstance(body, dict):
            detail = str(body.get("error") or body.get("errorCode") or body.get("message") or raw)
    except (TypeError, ValueError):
        pass

    lowered = detail.lower()
    for needle, message in KNOWN_ERRORS:
        if needle in lowered:
            return message
    return detail.strip() or default


class JupiterRouter:
    """
    Quote and swap-build client for the Jupiter aggregator.
    Blocking requests calls run in the default executor.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.api_base = config.get("JUPITER_API_BASE", "https://quote-api.jup.ag").rstrip("/")
        self.tokens_url = config.get("JUPITER_TOKENS_URL", "https://tokens.jup.ag").rstrip("/")
        self.default_slippage_bps = int(config.get("DEFAULT_SLIPPAGE_BPS", 500))
        self.timeout = float(config.get("HTTP_TIMEOUT_SECONDS", 10))
        self.cache_ttl = config.get("ROUTE_CACHE_TTL", 10)

        # Quote cache
        self.route_cache = {}  # {cache_key: {timestamp, quote}}

        logger.info(f"Initialized JupiterRouter on {self.api_base}")

    async def _run(self, func):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    def _get_from_cache(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self.route_cache.get(key)
        if entry is None:
            return None
        if time.time() - entry["timestamp"] > self.cache_ttl:
            del self.route_cache[key]
            return None
        return entry["quote"]

    def _add_to_cache(self, key: str, quote: Dict[str, Any]) -> None:
        self.route_cache[key] = {"timestamp": time.time(), "quote": quote}

    async def check_token_availability(self, mint: str) -> bool:
        """Advisory lookup in the aggregator token list; False on any error."""
        url = f"{self.tokens_url}/token/{mint}"
        try:
            response = await self._run(lambda: requests.get(url, timeout=self.timeout))
        except requests.RequestException as e:
            logger.error(f"Error checking token availability for {mint}: {e}")
            return False

        available = response.status_code == 200
        logger.info(f"Token {mint} availability on Jupiter: {available}")
        return available

    async def get_quote(self, input_mint: str, output_mint: str, amount: int,
                        slippage_bps: Optional[int] = None) -> Dict[str, Any]:
        """
        Fetch a swap quote

        Args:
            input_mint: Input token mint
            output_mint: Output token mint
            amount: Input amount in native units (lamports for SOL)
            slippage_bps: Slippage tolerance in basis points

        Returns:
            Quote object (inAmount, outAmount, priceImpactPct, routePlan, ...)
        """
        if slippage_bps is None:
            slippage_bps = self.default_slippage_bps

        cache_key = f"{input_mint}:{output_mint}:{amount}:{slippage_bps}"
        cached = self._get_from_cache(cache_key)
        if cached:
            logger.debug(f"Using cached quote for {cache_key}")
            return cached

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": int(slippage_bps)
        }
        url = f"{self.api_base}/v6/quote"

        try:
            response = await self._run(lambda: requests.get(url, params=params, timeout=self.timeout))
        except requests.RequestException as e:
            logger.error(f"Jupiter quote request failed: {e}")
            raise SwapError("Could not reach the swap aggregator. Please try again.", str(e)) from e

        if response.status_code != 200:
            logger.error(f"Jupiter quote failed: {response.status_code} - {response.text}")
            raise SwapError(describe_swap_error(response.text, "Failed to get a swap quote"), response.text)

        try:
            quote = response.json()
        except ValueError as e:
            raise SwapError("Invalid quote response from the swap aggregator.", response.text) from e

        if not isinstance(quote, dict) or not quote.get("inAmount") or not quote.get("outAmount"):
            logger.error("Invalid quote response - missing amount fields")
            raise SwapError("Invalid quote response from the swap aggregator.", response.text)

        logger.info(f"Quote {input_mint} -> {output_mint}: in={quote['inAmount']} out={quote['outAmount']} "
                    f"impact={quote.get('priceImpactPct', '0')}%")
        self._add_to_cache(cache_key, quote)
        return quote

    async def get_buy_quote(self, output_mint: str, amount_sol: float,
                            slippage_bps: Optional[int] = None) -> Dict[str, Any]:
        """Quote for spending amount_sol SOL on output_mint."""
        if amount_sol < MIN_BUY_AMOUNT_SOL:
            raise SwapError(f"Amount too small, the minimum is {MIN_BUY_AMOUNT_SOL} SOL.")

        if not await self.check_token_availability(output_mint):
            logger.warning(f"Token {output_mint} is not listed on Jupiter; trying the quote anyway")

        amount_lamports = int(amount_sol * LAMPORTS_PER_SOL)
        return await self.get_quote(WSOL_MINT, output_mint, amount_lamports, slippage_bps)

    async def get_sell_quote(self, input_mint: str, amount: int,
                             slippage_bps: Optional[int] = None) -> Dict[str, Any]:
        """Quote for selling amount native units of input_mint for SOL."""
        if amount <= 0:
            raise SwapError("Amount must be greater than 0.")

        if not await self.check_token_availability(input_mint):
            logger.warning(f"Token {input_mint} is not listed on Jupiter; trying the quote anyway")

        return await self.get_quote(input_mint, WSOL_MINT, amount, slippage_bps)

    async def build_swap_transaction(self, quote: Dict[str, Any], user_public_key: str,
                                     priority_fee: Optional[int] = None) -> SwapTransaction:
        """
        Build the unsigned swap transaction for a quote

        Args:
            quote: Quote returned by get_quote
            user_public_key: Wallet that will sign the transaction
            priority_fee: Optional prioritization fee in lamports

        Returns:
            SwapTransaction holding the base64 versioned transaction
        """
        try:
            Pubkey.from_string(user_public_key)
        except ValueError as e:
            raise SwapError("Invalid wallet public key.", str(e)) from e

        swap_request = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "asLegacyTransaction": False
        }
        if priority_fee:
            swap_request["prioritizationFeeLamports"] = int(priority_fee)

        url = f"{self.api_base}/v6/swap"
        try:
            response = await self._run(lambda: requests.post(url, json=swap_request, timeout=self.timeout))
        except requests.RequestException as e:
            logger.error(f"Jupiter swap request failed: {e}")
            raise SwapError("Could not reach the swap aggregator. Please try again.", str(e)) from e

        if response.status_code != 200:
            logger.error(f"Jupiter swap transaction build failed: {response.status_code} - {response.text}")
            raise SwapError(describe_swap_error(response.text, "Failed to build swap transaction"), response.text)

        try:
            swap_data = response.json()
        except ValueError as e:
            raise SwapError("Invalid swap response from the swap aggregator.", response.text) from e

        encoded = swap_data.get("swapTransaction") if isinstance(swap_data, dict) else None
        if not encoded:
            raise SwapError("No transaction returned from Jupiter.", response.text)

        try:
            VersionedTransaction.from_bytes(base64.b64decode(encoded, validate=True))
        except Exception as e:
            raise SwapError("Jupiter returned a transaction that cannot be decoded.", str(e)) from e

        return SwapTransaction(
            swap_transaction=encoded,
            last_valid_block_height=int(swap_data.get("lastValidBlockHeight") or 0),
            prioritization_fee_lamports=int(swap_data.get("prioritizationFeeLamports") or 0),
            compute_unit_limit=int(swap_data.get("computeUnitLimit") or 0),
        )
