import time

import pytest

from mirror.history import CloudHistorySource, HistoryResolver, LocalHistorySource
from mirror.models import HistoryReason, PricePoint
from mirror.prices import PriceBook

from .conftest import FakeReplica

KEY = "AWP | Asiimov (Field-Tested)"


@pytest.fixture
def book(store, clock):
    return PriceBook(store, clock=clock)


def _seed_local(store, clock, prices):
    now = int(clock() * 1000)
    store.append_history([
        PricePoint(KEY, price, now - (len(prices) - i) * 60_000) for i, price in enumerate(prices)
    ])


def _resolver(replica, book, timeout=0.2):
    return HistoryResolver([CloudHistorySource(replica, timeout=timeout), LocalHistorySource(book)])


def test_cloud_series_is_preferred(store, clock, book):
    _seed_local(store, clock, [1.0, 2.0])
    replica = FakeReplica()
    replica.history[KEY] = [PricePoint(KEY, 50.0, 1), PricePoint(KEY, 51.0, 2), PricePoint(KEY, 52.0, 3)]

    resolver = _resolver(replica, book)
    try:
        result = resolver.resolve(KEY, 30)
    finally:
        resolver.close()

    assert result.source == "cloud"
    assert result.reason is None
    assert [p.price for p in result.points] == [50.0, 51.0, 52.0]


def test_slow_cloud_falls_back_to_local_with_timeout_reason(store, clock, book):
    """The cloud takes 2s against a 0.2s budget; local holds five points."""
    _seed_local(store, clock, [1.0, 2.0, 3.0, 4.0, 5.0])
    replica = FakeReplica()
    replica.delay = 2
    replica.history[KEY] = [PricePoint(KEY, 9.0, 1), PricePoint(KEY, 9.5, 2)]

    resolver = _resolver(replica, book, timeout=0.2)
    started = time.monotonic()
    try:
        result = resolver.resolve(KEY, 30)
    finally:
        resolver.close()

    assert time.monotonic() - started < 1.5
    assert result.source == "local"
    assert result.reason is HistoryReason.TIMEOUT
    assert [p.price for p in result.points] == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_unconfigured_cloud_reports_no_cloud(store, clock, book):
    _seed_local(store, clock, [1.0, 2.0])
    resolver = _resolver(FakeReplica(configured=False), book)
    try:
        result = resolver.resolve(KEY)
    finally:
        resolver.close()

    assert result.source == "local"
    assert result.reason is HistoryReason.NO_CLOUD


def test_missing_replica_reports_no_cloud(store, clock, book):
    resolver = _resolver(None, book)
    _seed_local(store, clock, [1.0, 2.0])
    try:
        result = resolver.resolve(KEY)
    finally:
        resolver.close()
    assert result.reason is HistoryReason.NO_CLOUD


def test_cloud_error_falls_back_to_local(store, clock, book):
    _seed_local(store, clock, [1.0, 2.0, 3.0])
    replica = FakeReplica()
    replica.fail_reads = True

    resolver = _resolver(replica, book)
    try:
        result = resolver.resolve(KEY)
    finally:
        resolver.close()

    assert result.source == "local"
    assert result.reason is HistoryReason.CLOUD_ERROR
    assert len(result.points) == 3


def test_sparse_cloud_falls_back_to_local(store, clock, book):
    _seed_local(store, clock, [1.0, 2.0])
    replica = FakeReplica()
    replica.history[KEY] = [PricePoint(KEY, 9.0, 1)]

    resolver = _resolver(replica, book)
    try:
        result = resolver.resolve(KEY)
    finally:
        resolver.close()

    assert result.source == "local"
    assert result.reason is HistoryReason.INSUFFICIENT_CLOUD_DATA


def test_no_usable_series_anywhere(store, clock, book):
    _seed_local(store, clock, [1.0])
    replica = FakeReplica()

    resolver = _resolver(replica, book)
    try:
        result = resolver.resolve(KEY)
    finally:
        resolver.close()

    assert result.source == "none"
    assert result.points == []
    assert result.reason is HistoryReason.INSUFFICIENT_LOCAL_DATA
    assert not result.sufficient


def test_local_only_resolver(store, clock, book):
    _seed_local(store, clock, [1.0, 2.0])
    resolver = HistoryResolver([LocalHistorySource(book)])
    try:
        result = resolver.resolve(KEY)
    finally:
        resolver.close()

    assert result.source == "local"
    assert result.reason is None
    assert result.sufficient
