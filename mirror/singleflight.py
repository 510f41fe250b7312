# mirror/singleflight.py
import threading
from concurrent.futures import Future
from typing import Callable, Generic, Optional, TypeVar

from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Coalesce overlapping calls: while one call is running, later callers do not
    start a second run but wait for the first and share its result or error.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._inflight is not None

    def run(self, fn: Callable[[], T]) -> T:
        with self._lock:
            inflight = self._inflight
            if inflight is None:
                fut: Future = Future()
                self._inflight = fut
                leader = True
            else:
                fut = inflight
                leader = False

        if not leader:
            logger.debug("%s already in flight; waiting for it.", self.name)
            return fut.result()

        try:
            result = fn()
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight = None
