# mirror/connectivity.py
import threading
from typing import Callable, List

from .logger import get_logger

logger = get_logger(__name__)


class Connectivity:
    """
    Owned connectivity flag shared by the catalog sync and the poll scheduler.
    Whoever observes the network (a probe, the host OS, a test) calls set_online().
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        with self._lock:
            if online == self._online:
                return
            self._online = online
            listeners = list(self._listeners)

        logger.info("Connectivity changed: %s.", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.exception("Connectivity listener failed: %s", e)
