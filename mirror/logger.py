# mirror/logger.py
import logging
import os
import sys
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from typing import Iterator, List

_configured = False

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(threadName)s %(message)s"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _handlers(level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []

    if _env_flag("LOG_TO_STDOUT", "true"):
        handlers.append(logging.StreamHandler(sys.stdout))

    if _env_flag("LOG_TO_FILE", "false"):
        log_file = os.getenv("LOG_FILE", "/data/market_mirror.log")
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    log_file,
                    maxBytes=int(os.getenv("LOG_MAX_BYTES", str(2 * 1024 * 1024))),
                    backupCount=int(os.getenv("LOG_BACKUPS", "3")),
                )
            )
        except OSError as e:
            logging.getLogger(__name__).warning("Failed to initialize file logging at %s: %s", log_file, e)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging():
    global _configured
    if _configured:
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicate handlers
    if not root.handlers:
        for handler in _handlers(level):
            root.addHandler(handler)

    # urllib3 is chatty at DEBUG once retries kick in
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))

    _configured = True


def get_logger(name: str | None = None) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)


@contextmanager
def timed(logger: logging.Logger, what: str) -> Iterator[None]:
    """Log how long the wrapped block took, at INFO on success and WARNING on failure."""
    started = time.monotonic()
    try:
        yield
    except BaseException:
        logger.warning("%s failed after %.1fs.", what, time.monotonic() - started)
        raise
    logger.info("%s finished in %.1fs.", what, time.monotonic() - started)
