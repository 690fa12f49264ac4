# Filename: normalizer.py

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from formatting import (
    PLACEHOLDER,
    age_seconds,
    format_market_cap,
    format_number,
    format_price,
    format_sol,
    time_ago,
)
from models import Category, TokenRecord
from queries import ROW_FIELDS, WSOL_MINT

PROTOCOL_MINT_SUFFIX = "pump"

# Base reserve window of a pool that is about to leave the bonding curve
FINAL_STRETCH_LOWER_RESERVE = 206_900_000
FINAL_STRETCH_UPPER_RESERVE = 246_555_000
FINAL_STRETCH_LOWER_PROGRESS = 95.0

TOTAL_SUPPLY = 1_000_000_000
BASE_DECIMALS_DIVISOR = 1e6
QUOTE_DECIMALS_DIVISOR = 1e9


def _is_protocol_mint(mint: Optional[str]) -> bool:
    return bool(mint) and mint.endswith(PROTOCOL_MINT_SUFFIX) and mint != WSOL_MINT


def _to_float(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    return float(value)


def bonding_curve_progress(base_reserve: float) -> float:
    """
    Map a base reserve inside the final stretch window to a curve progress.

    The lower reserve bound maps to 95% and the upper bound to 100%; values
    outside the window are clamped to [0, 100].
    """
    span = FINAL_STRETCH_UPPER_RESERVE - FINAL_STRETCH_LOWER_RESERVE
    ratio = (base_reserve - FINAL_STRETCH_LOWER_RESERVE) / span
    progress = FINAL_STRETCH_LOWER_PROGRESS + ratio * (100.0 - FINAL_STRETCH_LOWER_PROGRESS)
    return max(0.0, min(100.0, progress))


def process_new_pair_data(update: Dict[str, Any], now: Optional[datetime] = None) -> Optional[TokenRecord]:
    """
    Normalize a TokenSupplyUpdates row (token create event).

    The payload has no market data, so price, change, holders and txns are
    emitted as placeholders.
    """
    currency = update["TokenSupplyUpdate"]["Currency"]
    mint = currency.get("MintAddress")
    if not mint:
        logger.warning("[NORMALIZE] New pair event without mint address, skipped")
        return None

    timestamp = (update.get("Block") or {}).get("Time") or ""
    age = age_seconds(timestamp, now)
    symbol = currency.get("Symbol") or "???"

    return TokenRecord(
        id=mint,
        mint_address=mint,
        name=currency.get("Name") or symbol,
        symbol=symbol,
        category=Category.NEW_PAIR,
        price_display=PLACEHOLDER,
        change_display=PLACEHOLDER,
        change_percent=0.0,
        market_cap_display=PLACEHOLDER,
        volume_display=PLACEHOLDER,
        age_seconds=age,
        age_display=time_ago(age),
        timestamp=timestamp,
        uri=currency.get("Uri") or "",
        tags=["Pump", "DS"],
        stats_placeholder=True,
    )


def process_final_stretch_data(pool_update: Dict[str, Any], now: Optional[datetime] = None) -> Optional[TokenRecord]:
    """Normalize a DEXPools row; only protocol mints near curve completion qualify."""
    pool = pool_update["Pool"]
    base_currency = pool["Market"]["BaseCurrency"]
    mint = base_currency.get("MintAddress")

    if not _is_protocol_mint(mint):
        logger.debug(f"[NORMALIZE] Final stretch pool skipped, base mint {mint} is not a protocol mint")
        return None

    base_reserve = _to_float((pool.get("Base") or {}).get("PostAmount"))
    quote = pool.get("Quote") or {}
    price_usd = _to_float(quote.get("PriceInUSD"))
    liquidity_usd = _to_float(quote.get("PostAmountInUSD"))
    progress = bonding_curve_progress(base_reserve)

    timestamp = (pool_update.get("Block") or {}).get("Time") or ""
    age = age_seconds(timestamp, now)
    symbol = base_currency.get("Symbol") or "???"
    protocol = (pool.get("Dex") or {}).get("ProtocolName") or "Pump"

    return TokenRecord(
        id=mint,
        mint_address=mint,
        name=base_currency.get("Name") or symbol,
        symbol=symbol,
        category=Category.FINAL_STRETCH,
        price_display=format_price(price_usd),
        change_display=PLACEHOLDER,
        change_percent=0.0,
        market_cap_display=format_market_cap(price_usd * TOTAL_SUPPLY),
        volume_display=format_market_cap(liquidity_usd),
        age_seconds=age,
        age_display=time_ago(age),
        timestamp=timestamp,
        uri=base_currency.get("Uri") or "",
        tags=[protocol, f"{progress:.0f}%"],
        progress=progress,
    )


def _argument(arguments: List[Dict[str, Any]], name: str) -> float:
    for arg in arguments or []:
        if arg.get("Name") != name:
            continue
        value = arg.get("Value") or {}
        for key in ("bigInteger", "integer"):
            if value.get(key) not in (None, ""):
                return float(value[key])
        return 0.0
    return 0.0


def process_migrated_data(instruction_event: Dict[str, Any], now: Optional[datetime] = None) -> Optional[TokenRecord]:
    """Normalize a create_pool instruction of a token leaving the bonding curve."""
    instruction = instruction_event["Instruction"]

    mint = None
    for account in instruction.get("Accounts") or []:
        candidate = (account.get("Token") or {}).get("Mint")
        if _is_protocol_mint(candidate):
            mint = candidate
            break

    if mint is None:
        logger.debug("[NORMALIZE] Migration skipped, no protocol mint in accounts")
        return None

    arguments = (instruction.get("Program") or {}).get("Arguments") or []
    base_amount = _argument(arguments, "base_amount_in") / BASE_DECIMALS_DIVISOR
    quote_amount = _argument(arguments, "quote_amount_in") / QUOTE_DECIMALS_DIVISOR
    price_sol = quote_amount / base_amount if base_amount > 0 else 0.0

    timestamp = (instruction_event.get("Block") or {}).get("Time") or ""
    age = age_seconds(timestamp, now)

    return TokenRecord(
        id=mint,
        mint_address=mint,
        name="Unknown",
        symbol="???",
        category=Category.MIGRATED,
        price_display=format_sol(price_sol),
        change_display=PLACEHOLDER,
        change_percent=0.0,
        market_cap_display=format_number(base_amount),
        volume_display=format_sol(quote_amount),
        age_seconds=age,
        age_display=time_ago(age),
        timestamp=timestamp,
        tags=["Pump AMM", "Migrated"],
    )


NORMALIZERS: Dict[Category, Callable[..., Optional[TokenRecord]]] = {
    Category.NEW_PAIR: process_new_pair_data,
    Category.FINAL_STRETCH: process_final_stretch_data,
    Category.MIGRATED: process_migrated_data,
}


def normalize_batch(category: Category, data: Dict[str, Any], now: Optional[datetime] = None) -> List[TokenRecord]:
    """
    Normalize every row of a subscription or query payload.

    Rows that do not qualify or cannot be parsed are dropped; input order is kept.
    """
    rows = ((data or {}).get("Solana") or {}).get(ROW_FIELDS[category])
    if not isinstance(rows, list):
        logger.warning(f"[NORMALIZE] {category.value}: payload has no {ROW_FIELDS[category]} list")
        return []

    process = NORMALIZERS[category]
    records = []
    for row in rows:
        try:
            record = process(row, now)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"[NORMALIZE] {category.value}: malformed row skipped ({e!r})")
            continue
        if record is not None:
            records.append(record)

    return records
