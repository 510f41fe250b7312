"""Shared fixtures for the mirror test-suite."""
import os
import sqlite3
import threading
import time
from typing import Dict, List, Optional

import pytest
from tenacity import wait_none

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from fetchers import transport
from mirror.config import Settings
from mirror.errors import CloudUnavailable
from mirror.models import CatalogItem, PricePoint, PriceStats
from mirror.storage import MirrorStore


class ManualClock:
    """time.time() stand-in that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeReplica:
    """In-memory cloud replica with switchable failure modes."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.snapshots: List[tuple] = []
        self.history: Dict[str, List[PricePoint]] = {}
        self.delay = 0.0
        self.fail_reads = False
        self.fail_writes = False
        self.write_delay = 0.0
        self.written = threading.Event()

    @property
    def is_configured(self) -> bool:
        return self.configured

    def save_snapshot(self, prices: Dict[str, PriceStats], timestamp_ms: Optional[int] = None) -> int:
        try:
            if self.write_delay:
                time.sleep(self.write_delay)
            if self.fail_writes:
                raise CloudUnavailable("replica down")
            self.snapshots.append((timestamp_ms, prices))
            return timestamp_ms
        finally:
            self.written.set()

    def get_price_history(self, market_key: str, days: int = 30) -> List[PricePoint]:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_reads:
            raise CloudUnavailable("replica down")
        return list(self.history.get(market_key, []))

    def cleanup_old_snapshots(self, days_to_keep: int = 30) -> int:
        return 0


def make_item(item_id: str, **overrides) -> CatalogItem:
    fields = {
        "name": f"Skin {item_id}",
        "category": "Rifle",
        "weapon": "AK-47",
        "description": "original description",
        "wears": ["Factory New", "Field-Tested"],
    }
    fields.update(overrides)
    return CatalogItem(item_id=item_id, **fields)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(tmp_path) -> MirrorStore:
    s = MirrorStore(str(tmp_path / "mirror.sqlite3"))
    s.ensure_db()
    return s


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "mirror.sqlite3"),
        cloud_timeout_seconds=0.2,
        poll_minutes=30,
    )


@pytest.fixture
def no_retry_wait(monkeypatch):
    """Keep tenacity retries but skip the back-off sleeps."""
    monkeypatch.setattr(transport, "_send", transport._send.retry_with(wait=wait_none()))


class VacuumFailsConnection:
    """sqlite3 connection whose VACUUM fails as it does on a full disk."""

    def __init__(self, con):
        object.__setattr__(self, "_con", con)

    def execute(self, sql, *args):
        if sql.strip().upper() == "VACUUM":
            raise sqlite3.OperationalError("database or disk is full")
        return self._con.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._con, name)

    def __setattr__(self, name, value):
        setattr(self._con, name, value)


@pytest.fixture
def vacuum_fails(monkeypatch):
    real_connect = sqlite3.connect

    def connect(*args, **kwargs):
        return VacuumFailsConnection(real_connect(*args, **kwargs))

    monkeypatch.setattr(sqlite3, "connect", connect)
