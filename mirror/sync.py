# mirror/sync.py
import threading
import time
from typing import Callable, List, Optional

from .connectivity import Connectivity
from .errors import EmptyRemoteResponse, MirrorError, NetworkUnavailable, NoCachedData
from .logger import get_logger, timed
from .models import CatalogItem
from .singleflight import SingleFlight
from .storage import DAY_MS, MirrorStore

logger = get_logger(__name__)

LAST_CATALOG_SYNC = "lastCatalogSync"


class CatalogSync:
    """
    Keeps the local catalog consistent with the remote one without ever
    losing a favorite flag.
    """

    def __init__(
        self,
        store: MirrorStore,
        fetch_catalog: Callable[[], List[CatalogItem]],
        connectivity: Optional[Connectivity] = None,
        stale_after_ms: int = DAY_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.fetch_catalog = fetch_catalog
        self.connectivity = connectivity or Connectivity()
        self.stale_after_ms = stale_after_ms
        self.clock = clock
        self._gate: SingleFlight[int] = SingleFlight("catalog sync")

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def last_sync_ms(self) -> Optional[int]:
        value = self.store.get_metadata(LAST_CATALOG_SYNC)
        return int(value) if value is not None else None

    def is_stale(self) -> bool:
        last = self.last_sync_ms()
        if last is None:
            return True
        return self._now_ms() - last > self.stale_after_ms

    def load_or_sync(self) -> List[CatalogItem]:
        """
        Serve the stored catalog. An empty store is filled by a foreground sync
        (errors propagate); a stale one is served as-is while a background
        resync runs.
        """
        items = self.store.get_all_items()
        if items:
            if self.is_stale():
                logger.info("Catalog is stale; serving %d stored items and resyncing in background.", len(items))
                self.resync_in_background()
            return items

        if not self.connectivity.online:
            raise NoCachedData("catalog")

        logger.info("Catalog store is empty; running initial sync.")
        try:
            self.sync_from_remote()
        except NetworkUnavailable as e:
            raise NoCachedData("catalog") from e
        return self.store.get_all_items()

    def sync_from_remote(self) -> int:
        """Pull the full catalog and merge it. Overlapping calls share one run."""
        return self._gate.run(self._sync)

    def _sync(self) -> int:
        if not self.connectivity.online:
            raise NetworkUnavailable("Catalog sync skipped: device is offline.")

        with timed(logger, "Catalog sync"):
            items = self.fetch_catalog()
            if not items:
                raise EmptyRemoteResponse("Remote catalog returned no items.")

            count = self.store.upsert_items(items)
            self.store.set_metadata(LAST_CATALOG_SYNC, self._now_ms())
        logger.info("Synced %d catalog items.", count)
        return count

    def resync_in_background(self) -> Optional[threading.Thread]:
        """Start a detached resync unless one is already running."""
        if self._gate.busy:
            logger.debug("Catalog sync already running; not starting another.")
            return None
        thread = threading.Thread(target=self._background_sync, name="catalog-resync", daemon=True)
        thread.start()
        return thread

    def _background_sync(self) -> None:
        try:
            self.sync_from_remote()
        except MirrorError as e:
            logger.warning("Background catalog resync failed; keeping stored catalog: %s", e)
        except Exception as e:
            logger.exception("Unexpected error in background catalog resync: %s", e)

    def set_favorite(self, item_id: str, is_favorite: bool) -> bool:
        return self.store.set_favorite(item_id, is_favorite)

    def toggle_favorite(self, item_id: str) -> Optional[bool]:
        return self.store.toggle_favorite(item_id)
