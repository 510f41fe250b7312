# mirror/prices.py
import time
from typing import Callable, Dict, List, Optional, Tuple

from .logger import get_logger
from .models import PricePoint, PriceSnapshot, PriceStats
from .storage import DAY_MS, MirrorStore

logger = get_logger(__name__)

WEAR_ORDER = [
    "Factory New",
    "Minimal Wear",
    "Field-Tested",
    "Well-Worn",
    "Battle-Scarred",
]

# Order tried when a lookup does not name a wear; most listings are Field-Tested.
FALLBACK_WEARS = [
    "Field-Tested",
    "Minimal Wear",
    "Factory New",
    "Well-Worn",
    "Battle-Scarred",
]


def build_market_key(
    name: str,
    wear: Optional[str] = None,
    stattrak: bool = False,
    souvenir: bool = False,
) -> str:
    """
    Build the Steam market hash name for a skin variant, e.g.
    "StatTrak™ AK-47 | Redline (Field-Tested)".
    StatTrak and Souvenir are mutually exclusive; StatTrak wins.
    """
    key = name.strip()
    if stattrak:
        key = f"StatTrak™ {key}"
    elif souvenir:
        key = f"Souvenir {key}"
    if wear:
        key = f"{key} ({wear})"
    return key


class PriceBook:
    """Current price cache plus the append-only price history log."""

    def __init__(self, store: MirrorStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def refresh(self, prices: Dict[str, PriceStats]) -> int:
        """
        Upsert every entry into the cache and append one history point per
        entry with a positive price. Zero-priced entries still update the cache.
        Returns the number of history points written.
        """
        if not prices:
            logger.info("Price refresh called with no entries; nothing to do.")
            return 0

        self.store.upsert_prices(prices)

        ts = self._now_ms()
        latest = self.store.latest_history_timestamp()
        if latest is not None and latest > ts:
            logger.warning(
                "Clock is behind the newest history point by %d ms; reusing its timestamp.",
                latest - ts,
            )
            ts = latest

        points = [
            PricePoint(market_key=key, price=stats.price, timestamp=ts)
            for key, stats in prices.items()
            if stats.price is not None and stats.price > 0
        ]
        skipped = len(prices) - len(points)
        written = self.store.append_history(points)

        logger.info(
            "Refreshed %d cached prices; %d history points written, %d non-positive skipped.",
            len(prices), written, skipped,
        )
        return written

    def get_current(self, market_key: str) -> Optional[PriceSnapshot]:
        return self.store.get_price(market_key)

    def get_all_current(self) -> Dict[str, PriceSnapshot]:
        return self.store.get_all_prices()

    def prune_history(self, retention_days: int) -> int:
        cutoff = self._now_ms() - retention_days * DAY_MS
        deleted = self.store.delete_history_before(cutoff)
        if deleted:
            logger.info("Pruned %d history points older than %d days.", deleted, retention_days)
        return deleted

    def local_history(self, market_key: str, days: int) -> List[PricePoint]:
        return self.store.get_history(market_key, self._now_ms() - days * DAY_MS)

    def lookup(
        self,
        name: str,
        wear: Optional[str] = None,
        stattrak: bool = False,
        souvenir: bool = False,
    ) -> Optional[PriceSnapshot]:
        """
        Find the cached price for a skin. Without a wear, the common wears are
        tried in FALLBACK_WEARS order and the first hit wins.
        """
        if not name:
            return None

        wears = [wear] if wear else [None] + FALLBACK_WEARS
        for candidate in wears:
            key = build_market_key(name, candidate, stattrak, souvenir)
            snapshot = self.store.get_price(key)
            if snapshot is not None:
                return snapshot

        logger.debug("No cached price for %s (wear=%s).", name, wear)
        return None

    def wear_prices(
        self, name: str, stattrak: bool = False, souvenir: bool = False
    ) -> List[Tuple[str, PriceSnapshot]]:
        out: List[Tuple[str, PriceSnapshot]] = []
        for wear in WEAR_ORDER:
            snapshot = self.store.get_price(build_market_key(name, wear, stattrak, souvenir))
            if snapshot is not None and snapshot.price > 0:
                out.append((wear, snapshot))
        return out
