# fetchers/price_feed.py
from typing import Any, Dict, Optional

import requests

from mirror.errors import EmptyRemoteResponse, RemoteError
from mirror.logger import get_logger
from mirror.models import PriceStats

from . import transport

logger = get_logger(__name__)


def _cents_to_dollars(value: Any) -> float:
    try:
        return int(value) / 100.0
    except (TypeError, ValueError):
        return 0.0


def normalize_price_list(entries: Any) -> Dict[str, PriceStats]:
    """
    Turn the feed's [{market_hash_name, min_price, qty}, ...] list into
    market key -> PriceStats. The feed only knows the lowest listing, so
    min/avg/max all carry that value.
    """
    if not isinstance(entries, list):
        raise RemoteError(f"Price list is not a list (got {type(entries).__name__}).")

    out: Dict[str, PriceStats] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = entry.get("market_hash_name")
        if not key:
            continue
        price = _cents_to_dollars(entry.get("min_price"))
        try:
            qty = int(entry.get("qty") or 0)
        except (TypeError, ValueError):
            qty = 0
        out[str(key)] = PriceStats(price=price, min=price, avg=price, max=price, quantity=qty)
    return out


def fetch_prices(
    url: str,
    api_key: str = "",
    timeout: float = 30,
    session: Optional[requests.Session] = None,
) -> Dict[str, PriceStats]:
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
    logger.info("Fetching live prices from %s", url)

    data = transport.get_json(session or transport.new_session(), url, timeout=timeout, headers=headers)
    prices = normalize_price_list(data)
    if not prices:
        raise EmptyRemoteResponse(f"Price feed at {url} returned no usable entries.")

    logger.info("Loaded prices for %d market keys.", len(prices))
    return prices
