import queue
import signal
import threading
import time
from typing import Optional

from mirror.app import MarketMirror
from mirror.config import Settings
from mirror.errors import MirrorError, StorageExhausted
from mirror.logger import get_logger

logger = get_logger(__name__)

_shutdown = threading.Event()
# Filled by signal handlers, drained by the daemon loop. SimpleQueue.put is
# reentrant, so a handler never blocks on a lock the interrupted code holds.
_events = queue.SimpleQueue()


def build_mirror(settings: Optional[Settings] = None) -> MarketMirror:
    settings = settings or Settings.from_env()
    mirror = MarketMirror(settings)
    mirror.ensure_db()
    return mirror


def initial_load(mirror: MarketMirror) -> bool:
    """Foreground catalog load. Returns False when the catalog is unavailable."""
    try:
        items = mirror.load_or_sync()
    except StorageExhausted as e:
        logger.error("Local storage is full (%s); run with MODE=reset to clear and resync.", e)
        return False
    except MirrorError as e:
        logger.error("Initial catalog load failed: %s", e)
        return False
    logger.info("Catalog ready with %d items.", len(items))
    return True


def run_once(settings: Optional[Settings] = None) -> int:
    mirror = build_mirror(settings)
    ok = initial_load(mirror)
    try:
        written = mirror.refresh_prices()
        logger.info("Price refresh wrote %d history points.", written)
    except MirrorError as e:
        logger.error("Price refresh failed: %s", e)
        ok = False
    finally:
        mirror.close()
    return 0 if ok else 1


def run_reset(settings: Optional[Settings] = None) -> int:
    mirror = build_mirror(settings)
    try:
        count = mirror.clear_and_resync()
    except MirrorError as e:
        logger.error("Clear-and-resync failed: %s", e)
        return 1
    finally:
        mirror.close()
    logger.info("Reset complete; %d catalog items restored.", count)
    return 0


def run_cleanup(settings: Optional[Settings] = None) -> int:
    mirror = build_mirror(settings)
    try:
        result = mirror.cleanup()
    finally:
        mirror.close()
    logger.info(
        "Cleanup removed %d local history points and %d cloud snapshots.",
        result["local"], result["cloud"],
    )
    return 0


def _stop(signum, _frame):
    _shutdown.set()
    _events.put("shutdown")


def _request_background(signum, _frame):
    _events.put("background")


def _request_foreground(signum, _frame):
    _events.put("foreground")


def _install_signal_handlers() -> None:
    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    # Lifecycle hooks for a host that pauses the daemon, e.g. on battery or sleep.
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, _request_background)
        signal.signal(signal.SIGUSR2, _request_foreground)


def handle_lifecycle_event(mirror: MarketMirror, event: str) -> None:
    if event == "background":
        mirror.scheduler.on_background()
    elif event == "foreground":
        mirror.scheduler.on_foreground()
    elif event == "shutdown":
        logger.info("Shutdown requested.")
    else:
        logger.warning("Ignoring unknown lifecycle event %r.", event)


def run_daemon(settings: Optional[Settings] = None) -> None:
    settings = settings or Settings.from_env()
    logger.info("Starting daemon; poll every %d minutes.", settings.poll_minutes)
    mirror = build_mirror(settings)
    _install_signal_handlers()

    initial_load(mirror)
    mirror.scheduler.start(settings.poll_interval_seconds)

    next_check = time.monotonic() + settings.poll_interval_seconds
    try:
        while not _shutdown.is_set():
            try:
                event = _events.get(timeout=max(0.0, next_check - time.monotonic()))
            except queue.Empty:
                event = None
            try:
                if event is not None:
                    handle_lifecycle_event(mirror, event)
                    continue
                next_check = time.monotonic() + settings.poll_interval_seconds
                if mirror.catalog.is_stale():
                    mirror.catalog.resync_in_background()
            except Exception as e:
                logger.exception("Unhandled error in daemon loop: %s", e)
    finally:
        mirror.close()
        logger.info("Daemon stopped.")


if __name__ == "__main__":
    try:
        settings = Settings.from_env()
        if settings.mode == "once":
            raise SystemExit(run_once(settings))
        elif settings.mode == "reset":
            raise SystemExit(run_reset(settings))
        elif settings.mode == "cleanup":
            raise SystemExit(run_cleanup(settings))
        else:
            run_daemon(settings)
    except Exception as e:
        logger.exception("Fatal monitor error: %s", e)
        raise SystemExit(2)
