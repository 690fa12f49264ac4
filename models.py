# Filename: models.py

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


def _optional(cast, value):
    return None if value is None else cast(value)


class Category(str, Enum):
    """Logical feed a token belongs to. The value is also the socket subscription id."""
    NEW_PAIR = "new-pairs"
    FINAL_STRETCH = "final-stretch"
    MIGRATED = "migrated"

    @property
    def cache_key(self) -> str:
        return self.value.replace("-", "_")


@dataclass(frozen=True)
class TokenRecord:
    """
    TokenRecord is the unified shape every feed event is normalized into.
    It is created once per mint and category and never updated afterwards.
    """
    id: str                               # Token mint address
    mint_address: str
    name: str
    symbol: str
    category: Category
    price_display: str
    change_display: str
    change_percent: float
    market_cap_display: str
    volume_display: str
    age_seconds: int
    age_display: str
    timestamp: str                        # Source event time (ISO8601)
    uri: str = ""                         # Off-chain metadata pointer
    tags: List[str] = field(default_factory=list)
    holders: Optional[int] = None         # None when the payload does not carry it
    txns: Optional[int] = None
    progress: Optional[float] = None      # Bonding curve progress, final stretch only
    stats_placeholder: bool = False

    @property
    def trend(self) -> str:
        return "up" if self.change_percent > 0 else "down"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(
            id=str(data["id"]),
            mint_address=str(data["mint_address"]),
            name=str(data.get("name", "")),
            symbol=str(data.get("symbol", "")),
            category=Category(data["category"]),
            price_display=str(data.get("price_display", "")),
            change_display=str(data.get("change_display", "")),
            change_percent=float(data.get("change_percent", 0.0)),
            market_cap_display=str(data.get("market_cap_display", "")),
            volume_display=str(data.get("volume_display", "")),
            age_seconds=int(data.get("age_seconds", 0)),
            age_display=str(data.get("age_display", "")),
            timestamp=str(data.get("timestamp", "")),
            uri=str(data.get("uri") or ""),
            tags=list(data.get("tags") or []),
            holders=_optional(int, data.get("holders")),
            txns=_optional(int, data.get("txns")),
            progress=_optional(float, data.get("progress")),
            stats_placeholder=bool(data.get("stats_placeholder", False)),
        )


@dataclass
class TokenInfo:
    """Mint-level metadata taken from the token's create event"""
    mint_address: str
    name: str
    symbol: str
    decimals: int
    uri: str
    created_at: str
    creator: str


@dataclass
class UriMetadata:
    """Off-chain metadata JSON referenced by a token's uri"""
    name: str = ""
    symbol: str = ""
    description: str = ""
    image: str = ""
    twitter: Optional[str] = None
    website: Optional[str] = None
    telegram: Optional[str] = None
    created_on: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "UriMetadata":
        return cls(
            name=str(data.get("name") or ""),
            symbol=str(data.get("symbol") or ""),
            description=str(data.get("description") or ""),
            image=str(data.get("image") or ""),
            twitter=data.get("twitter"),
            website=data.get("website"),
            telegram=data.get("telegram"),
            created_on=data.get("createdOn"),
        )


@dataclass
class TradingPair:
    market_address: str
    protocol_name: str
    protocol_family: str
    program_address: str
    trade_count: int


@dataclass
class OHLCVCandle:
    time: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    count: int


@dataclass
class ChartPoint:
    time: int              # Unix seconds
    open: float
    high: float
    low: float
    close: float


@dataclass
class TokenStats:
    price: float = 0.0
    liquidity: float = 0.0
    supply: float = 1_000_000_000
    global_fees_paid: float = 0.0
    bonding_curve_progress: float = 0.0
    market_cap: float = 0.0


@dataclass
class SolPrice:
    price: float = 0.0
    price_change_24h: float = 0.0


@dataclass
class SwapTransaction:
    """Unsigned swap transaction returned by the aggregator"""
    swap_transaction: str                 # base64 serialized versioned transaction
    last_valid_block_height: int
    prioritization_fee_lamports: int = 0
    compute_unit_limit: int = 0


class CancelToken:
    """Cooperative cancellation flag handed through every async fetch."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled
