# fetchers/transport.py
import os
from typing import Any, Dict, Optional

import requests
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from mirror.errors import NetworkUnavailable, RemoteError
from mirror.logger import get_logger

logger = get_logger(__name__)

HTTP_RETRIES = int(os.getenv("HTTP_RETRIES", "3"))
USER_AGENT = os.getenv("HTTP_USER_AGENT", "skin-market-mirror/1.0")


class TransientStatus(Exception):
    """5xx or 429 answer; worth another attempt."""

    def __init__(self, status: int, url: str):
        super().__init__(f"HTTP {status} from {url}")
        self.status = status


def new_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
    return session


@retry(
    wait=wait_exponential_jitter(initial=1, max=30),
    stop=stop_after_attempt(HTTP_RETRIES),
    retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, TransientStatus)),
)
def _send(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> requests.Response:
    resp = session.request(method, url, timeout=timeout, **kwargs)
    if resp.status_code >= 500 or resp.status_code == 429:
        raise TransientStatus(resp.status_code, url)
    return resp


def request(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float = 30,
    **kwargs: Any,
) -> requests.Response:
    """
    Send a request with retries and map every failure onto the mirror's error
    taxonomy: no route to the host is NetworkUnavailable, anything the remote
    answered badly is RemoteError.
    """
    try:
        resp = _send(session, method, url, timeout, **kwargs)
    except RetryError as e:
        last = e.last_attempt.exception()
        logger.warning("%s %s failed after %d attempts: %s", method, url, HTTP_RETRIES, last)
        if isinstance(last, TransientStatus):
            raise RemoteError(str(last), status=last.status) from last
        raise NetworkUnavailable(f"{method} {url} unreachable: {last}") from last
    except requests.RequestException as e:
        raise RemoteError(f"{method} {url} failed: {e}") from e

    if resp.status_code >= 400:
        raise RemoteError(f"HTTP {resp.status_code} from {url}", status=resp.status_code)
    return resp


def get_json(
    session: requests.Session,
    url: str,
    timeout: float = 30,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    resp = request(session, "GET", url, timeout=timeout, headers=headers, params=params)
    try:
        return resp.json()
    except ValueError as e:
        raise RemoteError(f"Invalid JSON from {url}: {e}", status=resp.status_code) from e
