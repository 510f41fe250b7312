# mirror/scheduler.py
import enum
import threading
import time
from typing import Any, Callable, Optional

from .connectivity import Connectivity
from .errors import MirrorError
from .logger import get_logger

logger = get_logger(__name__)


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUSPENDED = "suspended"


class PollScheduler:
    """
    Periodic price poller driven by three kinds of events: timer fires,
    foreground/background lifecycle changes and connectivity changes.

        IDLE      -> POLLING    timer fire or resume, while online
        POLLING   -> IDLE       poll finished (success or handled failure)
        IDLE      -> SUSPENDED  moved to background; timer keeps ticking but
                                fires are skipped
        SUSPENDED -> POLLING    resume after more than debounce_seconds since
                                the last successful poll (otherwise -> IDLE)

    Only one poll runs at a time; a fire that arrives while polling is dropped.
    After stop() returns no new poll starts; one already running finishes and
    the timer is not re-armed. A start() issued while that poll is still
    running polls as soon as it finishes.
    """

    def __init__(
        self,
        poll: Callable[[], Any],
        interval_seconds: float = 30 * 60,
        debounce_seconds: float = 5 * 60,
        connectivity: Optional[Connectivity] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.poll = poll
        self.interval_seconds = interval_seconds
        self.debounce_seconds = debounce_seconds
        self.connectivity = connectivity or Connectivity()
        self.clock = clock

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._state = SchedulerState.IDLE
        self._stopped = False
        self._generation = 0
        self._pending: Optional[str] = None
        self._suspend_after_poll = False
        self._thread: Optional[threading.Thread] = None

        self.last_poll_at: Optional[float] = None
        self.last_success_at: Optional[float] = None
        self.poll_count = 0
        self.skipped_count = 0

        self.connectivity.subscribe(self.on_connectivity_change)

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stopped

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """Arm the recurring timer and poll once right away."""
        with self._cond:
            if self._thread is not None and self._thread.is_alive() and not self._stopped:
                logger.warning("Poll scheduler already running; start() ignored.")
                return
            if interval_seconds is not None:
                self.interval_seconds = interval_seconds
            self._stopped = False
            self._generation += 1
            self._pending = "start"
            self._thread = threading.Thread(
                target=self._run,
                args=(self._generation,),
                name="price-poller",
                daemon=True,
            )
            self._thread.start()
        logger.info("Poll scheduler started; polling every %.0f seconds.", self.interval_seconds)

    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Cancel the timer. No poll starts after this returns. With wait=True,
        also block until an in-flight poll has finished.
        """
        with self._cond:
            self._stopped = True
            self._generation += 1
            self._pending = None
            self._cond.notify_all()
            thread = self._thread
            self._thread = None

        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Poll scheduler stopped.")

    def _run(self, generation: int) -> None:
        while True:
            with self._cond:
                while self._generation == generation and self._pending is None:
                    if not self._cond.wait(self.interval_seconds):
                        self._pending = "timer"
                if self._generation != generation:
                    return
                trigger, self._pending = self._pending, None
                if trigger == "start":
                    # a poll left over from before a stop() may still be running
                    while self._generation == generation and self._state is SchedulerState.POLLING:
                        self._cond.wait()
                    if self._generation != generation:
                        return
            self.fire(trigger)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def fire(self, trigger: str = "timer") -> bool:
        """
        Run one poll if the state machine allows it. Never raises; returns
        True only when a poll ran and succeeded.
        """
        with self._lock:
            if self._stopped:
                logger.debug("Ignoring %s trigger: scheduler stopped.", trigger)
                return False
            if self._state is SchedulerState.SUSPENDED:
                self.skipped_count += 1
                logger.info("Skipping %s poll: app is in the background.", trigger)
                return False
            if self._state is SchedulerState.POLLING:
                self.skipped_count += 1
                logger.info("Skipping %s poll: a poll is already in flight.", trigger)
                return False
            if not self.connectivity.online:
                self.skipped_count += 1
                logger.info("Skipping %s poll: device is offline.", trigger)
                return False
            self._state = SchedulerState.POLLING

        logger.debug("Poll started (trigger=%s).", trigger)
        started = self.clock()
        ok = False
        try:
            self.poll()
            ok = True
        except MirrorError as e:
            logger.warning("Price poll (%s) failed; keeping cached prices: %s", trigger, e)
        except Exception as e:
            logger.exception("Unexpected error in price poll (%s): %s", trigger, e)
        finally:
            with self._lock:
                self.poll_count += 1
                self.last_poll_at = started
                if ok:
                    self.last_success_at = self.clock()
                if self._suspend_after_poll:
                    self._suspend_after_poll = False
                    self._state = SchedulerState.SUSPENDED
                else:
                    self._state = SchedulerState.IDLE
                self._cond.notify_all()
        return ok

    def _catch_up_due(self) -> bool:
        if self.last_success_at is None:
            return True
        return self.clock() - self.last_success_at > self.debounce_seconds

    def _request_catch_up(self, trigger: str) -> Optional[bool]:
        """
        Called with the lock held. Returns None when no catch-up is due, True
        when the worker thread was woken to do it, False when the caller has
        to run it inline.
        """
        if self._stopped or self._state is not SchedulerState.IDLE:
            return None
        if not self._catch_up_due():
            logger.debug("No %s catch-up: last poll is within the debounce window.", trigger)
            return None
        if self._thread is not None and self._thread.is_alive():
            self._pending = trigger
            self._cond.notify_all()
            return True
        return False

    def on_background(self) -> None:
        with self._lock:
            if self._state is SchedulerState.POLLING:
                self._suspend_after_poll = True
            else:
                self._state = SchedulerState.SUSPENDED
        logger.info("App moved to background; scheduled polls suspended.")

    def on_foreground(self) -> bool:
        """Resume polling; returns True when a catch-up poll was started."""
        with self._lock:
            self._suspend_after_poll = False
            if self._state is SchedulerState.SUSPENDED:
                self._state = SchedulerState.IDLE
            queued = self._request_catch_up("resume")
        logger.info("App returned to foreground.")
        if queued is None:
            return False
        if queued:
            return True
        return self.fire("resume")

    def on_connectivity_change(self, online: bool) -> None:
        if not online:
            logger.info("Offline; polls will be skipped until connectivity returns.")
            return
        # Only a running scheduler catches up; the caller's thread is never used.
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                self._request_catch_up("reconnect")
