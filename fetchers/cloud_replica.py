# fetchers/cloud_replica.py
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import requests

from mirror.errors import CloudUnavailable, MirrorError
from mirror.logger import get_logger
from mirror.models import PricePoint, PriceStats

from . import transport

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
SNAPSHOTS_TABLE = "price_snapshots"
HISTORY_RPC = "get_price_history"
SCAN_LIMIT = 200


def _points_from_snapshots(market_key: str, rows: List[dict]) -> List[PricePoint]:
    points: List[PricePoint] = []
    for row in rows:
        prices = row.get("prices") or {}
        info = prices.get(market_key) if isinstance(prices, dict) else None
        if not isinstance(info, dict):
            continue
        price = info.get("price") or info.get("avg") or 0
        try:
            price = float(price)
            ts = int(row["timestamp"])
        except (KeyError, TypeError, ValueError):
            continue
        if price > 0:
            points.append(PricePoint(market_key=market_key, price=price, timestamp=ts))
    points.sort(key=lambda p: p.timestamp)
    return points


class CloudReplica:
    """
    Client for the shared price_snapshots table behind a PostgREST (Supabase)
    endpoint. Without a URL and key the replica is unconfigured and every call
    raises CloudUnavailable.
    """

    def __init__(
        self,
        url: str = "",
        key: str = "",
        timeout: float = 15,
        session: Optional[requests.Session] = None,
    ):
        self.url = (url or "").rstrip("/")
        self.key = key or ""
        self.timeout = timeout
        self.session = session or transport.new_session()

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        if not self.is_configured:
            raise CloudUnavailable("Cloud replica is not configured (SUPABASE_URL/SUPABASE_KEY).")
        url = f"{self.url}/rest/v1/{path}"
        try:
            return transport.request(self.session, method, url, timeout=self.timeout, **kwargs)
        except MirrorError as e:
            raise CloudUnavailable(f"Cloud replica {method} {path} failed: {e}") from e

    def save_snapshot(self, prices: Dict[str, PriceStats], timestamp_ms: Optional[int] = None) -> int:
        """Store one full price snapshot keyed by its timestamp; returns the timestamp."""
        ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        payload = [{"timestamp": ts, "prices": {k: asdict(v) for k, v in prices.items()}}]
        logger.info("Saving price snapshot (%d keys, ts=%d) to cloud replica.", len(prices), ts)
        self._call(
            "POST",
            SNAPSHOTS_TABLE,
            json=payload,
            headers=self._headers(Prefer="return=minimal"),
        )
        return ts

    def get_price_history(
        self, market_key: str, days: int = 30, now_ms: Optional[int] = None
    ) -> List[PricePoint]:
        """
        Read the series for one market key. The server-side function extracts a
        single key cheaply; when it is missing, scan recent snapshots instead.
        """
        if not self.is_configured:
            raise CloudUnavailable("Cloud replica is not configured (SUPABASE_URL/SUPABASE_KEY).")
        try:
            resp = self._call(
                "POST",
                f"rpc/{HISTORY_RPC}",
                json={"market_hash_name": market_key, "days_back": days},
                headers=self._headers(),
            )
            rows = resp.json()
            if isinstance(rows, list):
                points = []
                for row in rows:
                    try:
                        price = float(row["price"])
                        ts = int(row["timestamp"])
                    except (KeyError, TypeError, ValueError):
                        continue
                    if price > 0:
                        points.append(PricePoint(market_key=market_key, price=price, timestamp=ts))
                points.sort(key=lambda p: p.timestamp)
                logger.debug("Cloud RPC returned %d points for %s.", len(points), market_key)
                return points
        except CloudUnavailable as e:
            logger.warning("History RPC failed, falling back to snapshot scan: %s", e)
        except ValueError as e:
            logger.warning("History RPC returned invalid JSON, falling back to snapshot scan: %s", e)

        now = now_ms if now_ms is not None else int(time.time() * 1000)
        cutoff = now - days * DAY_MS
        resp = self._call(
            "GET",
            SNAPSHOTS_TABLE,
            params={
                "select": "timestamp,prices",
                "timestamp": f"gte.{cutoff}",
                # newest first so a capped scan drops the oldest snapshots
                "order": "timestamp.desc",
                "limit": str(SCAN_LIMIT),
            },
            headers=self._headers(),
        )
        try:
            rows = resp.json()
        except ValueError as e:
            raise CloudUnavailable(f"Snapshot scan returned invalid JSON: {e}") from e
        if not isinstance(rows, list):
            raise CloudUnavailable("Snapshot scan did not return a list.")
        if len(rows) >= SCAN_LIMIT:
            logger.warning(
                "Snapshot scan hit the %d row cap; history for %s covers only the newest snapshots.",
                SCAN_LIMIT, market_key,
            )
        points = _points_from_snapshots(market_key, rows)
        logger.debug("Cloud scan returned %d points for %s.", len(points), market_key)
        return points

    def cleanup_old_snapshots(self, days_to_keep: int = 30, now_ms: Optional[int] = None) -> int:
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        cutoff = now - days_to_keep * DAY_MS
        resp = self._call(
            "DELETE",
            SNAPSHOTS_TABLE,
            params={"timestamp": f"lt.{cutoff}"},
            headers=self._headers(Prefer="return=representation"),
        )
        try:
            deleted = len(resp.json() or [])
        except ValueError:
            deleted = 0
        logger.info("Cleaned up %d cloud snapshots older than %d days.", deleted, days_to_keep)
        return deleted

    def stats(self) -> Dict[str, Any]:
        """Snapshot count and the oldest/newest snapshot timestamps (epoch ms)."""
        oldest = self._call(
            "GET",
            SNAPSHOTS_TABLE,
            params={"select": "timestamp", "order": "timestamp.asc", "limit": "1"},
            headers=self._headers(Prefer="count=exact"),
        )
        newest = self._call(
            "GET",
            SNAPSHOTS_TABLE,
            params={"select": "timestamp", "order": "timestamp.desc", "limit": "1"},
            headers=self._headers(),
        )

        # Content-Range looks like "0-0/123"
        count = 0
        content_range = oldest.headers.get("Content-Range", "")
        if "/" in content_range:
            total = content_range.rsplit("/", 1)[1]
            count = int(total) if total.isdigit() else 0

        oldest_rows = oldest.json() or []
        newest_rows = newest.json() or []
        return {
            "count": count,
            "oldest": oldest_rows[0]["timestamp"] if oldest_rows else None,
            "newest": newest_rows[0]["timestamp"] if newest_rows else None,
        }
