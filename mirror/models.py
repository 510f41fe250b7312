# mirror/models.py
import enum
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CatalogItem:
    """
    One skin variant from the remote catalog, flattened for local storage.
    is_favorite is user-owned state and is never taken from the remote payload.
    """
    item_id: str
    name: str
    category: str = "Other"
    description: str = ""
    weapon: str = ""
    pattern: str = ""
    rarity: str = ""
    rarity_color: str = ""
    min_float: float = 0.0
    max_float: float = 1.0
    wears: List[str] = field(default_factory=list)
    stattrak: bool = False
    souvenir: bool = False
    crates: List[str] = field(default_factory=list)
    collections: List[str] = field(default_factory=list)
    team: str = ""
    image: str = ""
    is_favorite: bool = False
    created_at: str = ""
    updated_at: str = ""


@dataclass
class PriceStats:
    """Prices for one market key as reported by the price feed, in dollars."""
    price: float
    min: float = 0.0
    avg: float = 0.0
    max: float = 0.0
    quantity: int = 0


@dataclass
class PriceSnapshot:
    market_key: str
    price: float
    min: float = 0.0
    avg: float = 0.0
    max: float = 0.0
    quantity: int = 0
    updated_at: str = ""

    def stats(self) -> PriceStats:
        return PriceStats(
            price=self.price,
            min=self.min,
            avg=self.avg,
            max=self.max,
            quantity=self.quantity,
        )


@dataclass
class PricePoint:
    market_key: str
    price: float
    timestamp: int  # epoch milliseconds


class HistoryReason(str, enum.Enum):
    NO_CLOUD = "NO_CLOUD"
    TIMEOUT = "TIMEOUT"
    CLOUD_ERROR = "CLOUD_ERROR"
    INSUFFICIENT_CLOUD_DATA = "INSUFFICIENT_CLOUD_DATA"
    INSUFFICIENT_LOCAL_DATA = "INSUFFICIENT_LOCAL_DATA"


@dataclass
class HistoryResult:
    """
    Answer to a historical price query.
    source is "cloud", "local" or "none"; reason explains why the cloud tier
    was not used, or why no usable series exists.
    """
    market_key: str
    points: List[PricePoint]
    source: str
    reason: Optional[HistoryReason] = None

    @property
    def sufficient(self) -> bool:
        return len(self.points) >= 2
