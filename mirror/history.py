# mirror/history.py
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import List, Optional, Sequence

from .logger import get_logger
from .models import HistoryReason, HistoryResult, PricePoint
from .prices import PriceBook

logger = get_logger(__name__)

MIN_SERIES_POINTS = 2


class HistorySource:
    """
    One tier of history storage. Subclasses say whether they can be asked at
    all, how long they may take, and how their failures are classified.
    """

    name = "source"
    timeout: Optional[float] = None
    error_reason = HistoryReason.CLOUD_ERROR
    insufficient_reason = HistoryReason.INSUFFICIENT_LOCAL_DATA

    def unavailable_reason(self) -> Optional[HistoryReason]:
        return None

    def fetch(self, market_key: str, days: int) -> List[PricePoint]:
        raise NotImplementedError


class CloudHistorySource(HistorySource):
    name = "cloud"
    error_reason = HistoryReason.CLOUD_ERROR
    insufficient_reason = HistoryReason.INSUFFICIENT_CLOUD_DATA

    def __init__(self, replica, timeout: float = 5.0):
        self.replica = replica
        self.timeout = timeout

    def unavailable_reason(self) -> Optional[HistoryReason]:
        if self.replica is None or not self.replica.is_configured:
            return HistoryReason.NO_CLOUD
        return None

    def fetch(self, market_key: str, days: int) -> List[PricePoint]:
        return self.replica.get_price_history(market_key, days)


class LocalHistorySource(HistorySource):
    name = "local"
    error_reason = HistoryReason.INSUFFICIENT_LOCAL_DATA
    insufficient_reason = HistoryReason.INSUFFICIENT_LOCAL_DATA

    def __init__(self, prices: PriceBook):
        self.prices = prices

    def fetch(self, market_key: str, days: int) -> List[PricePoint]:
        return self.prices.local_history(market_key, days)


class HistoryResolver:
    """
    Ask each source in order and return the first series with at least two
    points. The reason on the result records why an earlier tier was passed
    over; with no usable series the result is empty with
    INSUFFICIENT_LOCAL_DATA. resolve() never raises.
    """

    def __init__(self, sources: Sequence[HistorySource], max_workers: int = 4):
        self.sources = list(sources)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="history")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _fetch(self, source: HistorySource, market_key: str, days: int) -> List[PricePoint]:
        if source.timeout is None:
            return source.fetch(market_key, days)
        future = self._executor.submit(source.fetch, market_key, days)
        try:
            return future.result(timeout=source.timeout)
        except FutureTimeout:
            future.cancel()
            raise

    def resolve(self, market_key: str, days: int = 30) -> HistoryResult:
        reason: Optional[HistoryReason] = None

        for source in self.sources:
            skip = source.unavailable_reason()
            if skip is not None:
                logger.debug("History source %s skipped for %s: %s", source.name, market_key, skip.value)
                reason = reason or skip
                continue

            try:
                points = self._fetch(source, market_key, days)
            except FutureTimeout:
                logger.warning(
                    "History source %s timed out after %.1fs for %s; falling back.",
                    source.name, source.timeout, market_key,
                )
                reason = reason or HistoryReason.TIMEOUT
                continue
            except Exception as e:
                logger.warning("History source %s failed for %s; falling back: %s", source.name, market_key, e)
                reason = reason or source.error_reason
                continue

            if len(points) >= MIN_SERIES_POINTS:
                logger.debug("History for %s served by %s (%d points).", market_key, source.name, len(points))
                return HistoryResult(market_key=market_key, points=points, source=source.name, reason=reason)

            logger.debug("History source %s had %d points for %s.", source.name, len(points), market_key)
            reason = reason or source.insufficient_reason

        return HistoryResult(
            market_key=market_key,
            points=[],
            source="none",
            reason=HistoryReason.INSUFFICIENT_LOCAL_DATA,
        )
