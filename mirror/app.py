# mirror/app.py
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from fetchers import catalog_api, price_feed
from fetchers.cloud_replica import CloudReplica
from fetchers.transport import new_session

from .config import Settings
from .connectivity import Connectivity
from .errors import CloudUnavailable, MirrorError, NetworkUnavailable
from .history import CloudHistorySource, HistoryResolver, LocalHistorySource
from .logger import get_logger, timed
from .models import CatalogItem, HistoryResult, PriceSnapshot, PriceStats
from .prices import PriceBook
from .scheduler import PollScheduler
from .singleflight import SingleFlight
from .storage import MirrorStore
from .sync import LAST_CATALOG_SYNC, CatalogSync

logger = get_logger(__name__)

LAST_PRICE_UPDATE = "lastPriceUpdate"


class ReplicaWriter:
    """Fire-and-forget writes to the cloud replica on daemon threads."""

    def __init__(self, replica: Optional[CloudReplica]):
        self.replica = replica

    def dispatch(self, prices: Dict[str, PriceStats], timestamp_ms: int) -> Optional[threading.Thread]:
        if self.replica is None or not self.replica.is_configured:
            logger.debug("Cloud replica not configured; running local-only.")
            return None
        thread = threading.Thread(
            target=self._write,
            args=(dict(prices), timestamp_ms),
            name="cloud-replica-write",
            daemon=True,
        )
        thread.start()
        return thread

    def _write(self, prices: Dict[str, PriceStats], timestamp_ms: int) -> None:
        try:
            self.replica.save_snapshot(prices, timestamp_ms)
        except CloudUnavailable as e:
            logger.warning("Cloud replica write failed; local data is unaffected: %s", e)
        except Exception as e:
            logger.exception("Unexpected error writing to cloud replica: %s", e)


class MarketMirror:
    """
    Owns the local store and every component that reads or writes it. Built
    from Settings; collaborators can be injected for tests.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[MirrorStore] = None,
        fetch_catalog: Optional[Callable[[], List[CatalogItem]]] = None,
        fetch_prices: Optional[Callable[[], Dict[str, PriceStats]]] = None,
        replica: Optional[CloudReplica] = None,
        connectivity: Optional[Connectivity] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.clock = clock
        self.store = store or MirrorStore(settings.db_path)
        self.connectivity = connectivity or Connectivity()

        if fetch_catalog is None or fetch_prices is None:
            session = new_session()
            if fetch_catalog is None:
                def fetch_catalog() -> List[CatalogItem]:
                    return catalog_api.fetch_catalog(
                        settings.catalog_api_url, settings.http_timeout_seconds, session
                    )
            if fetch_prices is None:
                def fetch_prices() -> Dict[str, PriceStats]:
                    return price_feed.fetch_prices(
                        settings.price_feed_url,
                        settings.price_feed_api_key,
                        settings.http_timeout_seconds,
                        session,
                    )
        self.fetch_prices = fetch_prices

        if replica is None:
            replica = CloudReplica(
                settings.supabase_url,
                settings.supabase_key,
                timeout=settings.http_timeout_seconds,
            )
        self.replica = replica
        self.replica_writer = ReplicaWriter(replica)

        self.catalog = CatalogSync(
            self.store,
            fetch_catalog,
            connectivity=self.connectivity,
            stale_after_ms=settings.catalog_stale_ms,
            clock=clock,
        )
        self.prices = PriceBook(self.store, clock=clock)
        self.history = HistoryResolver([
            CloudHistorySource(replica, timeout=settings.cloud_timeout_seconds),
            LocalHistorySource(self.prices),
        ])
        self.scheduler = PollScheduler(
            self.refresh_prices,
            interval_seconds=settings.poll_interval_seconds,
            debounce_seconds=settings.resume_debounce_seconds,
            connectivity=self.connectivity,
            clock=clock,
        )
        self._poll_gate: SingleFlight[int] = SingleFlight("price poll")

        if not replica.is_configured:
            logger.info("Cloud replica not configured; price history is local-only.")

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def ensure_db(self) -> None:
        self.store.ensure_db()

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def load_or_sync(self) -> List[CatalogItem]:
        return self.catalog.load_or_sync()

    def sync_catalog(self) -> int:
        return self.catalog.sync_from_remote()

    def toggle_favorite(self, item_id: str) -> Optional[bool]:
        return self.catalog.toggle_favorite(item_id)

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def refresh_prices(self) -> int:
        """
        One poll cycle: fetch, refresh cache and history, prune, record the
        update, then hand the snapshot to the cloud replica without waiting.
        A failed fetch raises and leaves every store untouched.
        """
        return self._poll_gate.run(self._poll)

    def _poll(self) -> int:
        if not self.connectivity.online:
            raise NetworkUnavailable("Price refresh skipped: device is offline.")

        with timed(logger, "Price poll"):
            prices = self.fetch_prices()
            written = self.prices.refresh(prices)
            self.prices.prune_history(self.settings.history_retention_days)

        now = self._now_ms()
        self.store.set_metadata(LAST_PRICE_UPDATE, now)
        self.replica_writer.dispatch(prices, now)
        return written

    def get_current_price(self, market_key: str) -> Optional[PriceSnapshot]:
        return self.prices.get_current(market_key)

    def price_history(self, market_key: str, days: int = 30) -> HistoryResult:
        return self.history.resolve(market_key, days)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_and_resync(self) -> int:
        """Recovery path for StorageExhausted: wipe local data and pull it again."""
        logger.warning("Clearing local data and resyncing from remote.")
        self.store.reset()
        self.store.ensure_db()
        count = self.catalog.sync_from_remote()
        try:
            self.refresh_prices()
        except MirrorError as e:
            logger.warning("Price refresh after reset failed; prices will arrive with the next poll: %s", e)
        return count

    def cleanup(self) -> Dict[str, int]:
        days = self.settings.history_retention_days
        out = {"local": self.prices.prune_history(days), "cloud": 0}
        if self.replica.is_configured:
            try:
                out["cloud"] = self.replica.cleanup_old_snapshots(days)
            except CloudUnavailable as e:
                logger.warning("Cloud snapshot cleanup failed: %s", e)
        return out

    def status(self) -> Dict[str, Any]:
        info: Dict[str, Any] = dict(self.store.stats())
        info[LAST_CATALOG_SYNC] = self.store.get_metadata(LAST_CATALOG_SYNC)
        info[LAST_PRICE_UPDATE] = self.store.get_metadata(LAST_PRICE_UPDATE)
        info["scheduler"] = self.scheduler.state.value
        info["online"] = self.connectivity.online
        info["cloud_configured"] = self.replica.is_configured
        return info

    def close(self, timeout: Optional[float] = 30) -> None:
        self.scheduler.stop(wait=True, timeout=timeout)
        self.history.close()
