"""
Token page market statistics.
Turns Bitquery OHLCV candles into chart points and headline stats.
"""

import logging
from dataclasses import asdict
from typing import List

import numpy as np
import pandas as pd

from formatting import parse_timestamp
from models import ChartPoint, OHLCVCandle, TokenStats

logger = logging.getLogger("market_stats")

# Candle prices are scaled to land in the usual market cap range of curve tokens
PRICE_SCALE_FACTOR = 1_000_000
TOTAL_SUPPLY = 1_000_000_000
GRADUATION_LIQUIDITY_SOL = 85.0
FEE_RATE = 0.01

PRICE_COLUMNS = ["open", "high", "low", "close"]


def candles_to_frame(candles: List[OHLCVCandle]) -> pd.DataFrame:
    """
    Build a DataFrame from candles

    Args:
        candles: Candles, oldest first

    Returns:
        DataFrame with a unix "ts" column plus the candle fields
    """
    if not candles:
        return pd.DataFrame(columns=["ts", "time"] + PRICE_COLUMNS + ["volume", "count"])

    frame = pd.DataFrame([asdict(candle) for candle in candles])
    timestamps = [parse_timestamp(candle.time) for candle in candles]
    frame["ts"] = [int(ts.timestamp()) if ts is not None else 0 for ts in timestamps]
    return frame


def convert_to_chart_data(candles: List[OHLCVCandle], sol_price: float = 0.0) -> List[ChartPoint]:
    """USD-scaled chart points; candles with a non-positive price are dropped."""
    if not candles or sol_price == 0:
        return []

    frame = candles_to_frame(candles)
    frame[PRICE_COLUMNS] = frame[PRICE_COLUMNS].astype(float) * sol_price * PRICE_SCALE_FACTOR
    valid = frame[(frame[PRICE_COLUMNS] > 0).all(axis=1)]

    return [
        ChartPoint(time=int(row.ts), open=float(row.open), high=float(row.high),
                   low=float(row.low), close=float(row.close))
        for row in valid.itertuples(index=False)
    ]


def calculate_token_stats(candles: List[OHLCVCandle], sol_price: float = 0.0) -> TokenStats:
    """
    Approximate headline stats from the candle history

    Args:
        candles: Candles, oldest first
        sol_price: SOL price in USD

    Returns:
        TokenStats (zeroed apart from the supply when data is missing)
    """
    if not candles or sol_price == 0:
        return TokenStats()

    frame = candles_to_frame(candles)
    latest_price_sol = float(frame["close"].iloc[-1] or 0)
    latest_price_usd = latest_price_sol * sol_price
    total_volume = float(np.nansum(frame["volume"].astype(float).to_numpy()))

    liquidity_sol = total_volume / 1_000_000_000
    progress = float(np.clip(liquidity_sol / GRADUATION_LIQUIDITY_SOL * 100, 0, 100))

    stats = TokenStats(
        price=latest_price_usd,
        liquidity=liquidity_sol,
        supply=TOTAL_SUPPLY,
        global_fees_paid=total_volume * FEE_RATE,
        bonding_curve_progress=progress,
        market_cap=latest_price_usd * PRICE_SCALE_FACTOR,
    )
    logger.debug(f"Token stats: price={stats.price:.8f} mc={stats.market_cap:.2f} progress={progress:.1f}%")
    return stats
