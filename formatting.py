# Filename: formatting.py

from datetime import datetime, timezone
from typing import Optional

# Shown wherever the feed payload does not carry a value
PLACEHOLDER = "--"


def format_price(price: float) -> str:
    if price >= 1000:
        return f"${price / 1000:.2f}K"
    elif price >= 1:
        return f"${price:.2f}"
    return f"${price:.6f}"


def format_number(num: float) -> str:
    if num >= 1_000_000_000:
        return f"{num / 1_000_000_000:.1f}B"
    elif num >= 1_000_000:
        return f"{num / 1_000_000:.1f}M"
    elif num >= 1000:
        return f"{num / 1000:.1f}K"
    return f"{num:.2f}"


def format_market_cap(market_cap: float) -> str:
    """Scale a USD market cap to a short label ($1.2M, $45K, $812...)."""
    if market_cap == 0:
        return "$0"
    if market_cap < 0:
        return f"-{format_market_cap(abs(market_cap))}"

    if market_cap >= 1_000_000_000:
        return f"${market_cap / 1_000_000_000:.1f}B"
    elif market_cap >= 1_000_000:
        return f"${market_cap / 1_000_000:.1f}M"
    elif market_cap >= 10_000:
        return f"${round(market_cap / 1000)}K"
    elif market_cap >= 1000:
        return f"${market_cap / 1000:.1f}K"
    elif market_cap >= 100:
        return f"${round(market_cap)}"
    elif market_cap >= 10:
        return f"${market_cap:.1f}"
    elif market_cap >= 1:
        return f"${market_cap:.2f}"
    return f"${market_cap:.3f}"


def format_sol(amount: float) -> str:
    if amount >= 1:
        return f"{amount:,.2f} SOL"
    return f"{amount:.6f} SOL"


def parse_timestamp(timestamp: str) -> Optional[datetime]:
    if not timestamp:
        return None
    try:
        # fromisoformat only accepts a trailing Z from Python 3.11 on
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def age_seconds(timestamp: str, now: Optional[datetime] = None) -> int:
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, int((now - parsed).total_seconds()))


def time_ago(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"
