import threading
import time

import pytest

from mirror.connectivity import Connectivity
from mirror.errors import EmptyRemoteResponse, NetworkUnavailable, NoCachedData, RemoteError
from mirror.storage import DAY_MS
from mirror.sync import LAST_CATALOG_SYNC, CatalogSync

from .conftest import make_item


def _catalog(n):
    return [make_item(f"skin-{i}") for i in range(n)]


def test_initial_sync_of_500_items(store, clock):
    sync = CatalogSync(store, lambda: _catalog(500), clock=clock)
    items = sync.load_or_sync()
    assert len(items) == 500
    assert store.count_items() == 500
    assert not any(i.is_favorite for i in items)
    assert sync.last_sync_ms() == int(clock() * 1000)


def test_favorites_survive_resync(store, clock):
    """Sync 500 items, favorite 3 of them, sync again with changed data."""
    sync = CatalogSync(store, lambda: _catalog(500), clock=clock)
    assert sync.sync_from_remote() == 500

    favorites = ["skin-7", "skin-42", "skin-499"]
    for item_id in favorites:
        assert sync.set_favorite(item_id, True)

    sync.fetch_catalog = lambda: [
        make_item(f"skin-{i}", description="changed upstream") for i in range(500)
    ]
    sync.sync_from_remote()

    assert store.count_items() == 500
    assert sorted(i.item_id for i in store.get_favorites()) == sorted(favorites)
    assert store.get_item("skin-7").description == "changed upstream"


def test_stale_store_is_served_and_resynced_in_background(store, clock):
    store.upsert_items([make_item("skin-1", description="old")])
    store.set_favorite("skin-1", True)
    store.set_metadata(LAST_CATALOG_SYNC, int(clock() * 1000) - 25 * 60 * 60 * 1000)

    fetched = threading.Event()

    def fetch():
        fetched.set()
        return [make_item("skin-1", description="new")]

    sync = CatalogSync(store, fetch, clock=clock)
    assert sync.is_stale()

    items = sync.load_or_sync()
    assert [i.description for i in items] == ["old"]
    assert fetched.wait(5)

    for _ in range(100):
        if not sync._gate.busy:
            break
        time.sleep(0.05)
    item = store.get_item("skin-1")
    assert item.description == "new"
    assert item.is_favorite is True
    assert not sync.is_stale()


def test_fresh_store_does_not_resync(store, clock):
    store.upsert_items([make_item("skin-1")])
    store.set_metadata(LAST_CATALOG_SYNC, int(clock() * 1000))

    def fetch():
        raise AssertionError("fresh catalog must not be refetched")

    sync = CatalogSync(store, fetch, clock=clock)
    assert [i.item_id for i in sync.load_or_sync()] == ["skin-1"]


def test_staleness_threshold(store, clock):
    sync = CatalogSync(store, lambda: _catalog(1), stale_after_ms=DAY_MS, clock=clock)
    assert sync.is_stale()
    sync.sync_from_remote()
    assert sync.last_sync_ms() == int(clock() * 1000)
    clock.advance(24 * 60 * 60)
    assert not sync.is_stale()
    clock.advance(1)
    assert sync.is_stale()


def test_empty_store_runs_foreground_sync(store, clock):
    sync = CatalogSync(store, lambda: _catalog(3), clock=clock)
    assert len(sync.load_or_sync()) == 3


def test_empty_store_offline_raises_no_cached_data(store, clock):
    sync = CatalogSync(store, lambda: _catalog(3), connectivity=Connectivity(online=False), clock=clock)
    with pytest.raises(NoCachedData) as exc:
        sync.load_or_sync()
    assert "network connection is required" in str(exc.value)
    assert isinstance(exc.value, NetworkUnavailable)


def test_unreachable_remote_with_empty_store_raises_no_cached_data(store, clock):
    def fetch():
        raise NetworkUnavailable("no route")

    sync = CatalogSync(store, fetch, clock=clock)
    with pytest.raises(NoCachedData):
        sync.load_or_sync()


def test_empty_remote_response_leaves_store_untouched(store, clock):
    store.upsert_items([make_item("skin-1")])
    sync = CatalogSync(store, lambda: [], clock=clock)
    with pytest.raises(EmptyRemoteResponse):
        sync.sync_from_remote()
    assert store.count_items() == 1
    assert store.get_metadata(LAST_CATALOG_SYNC) is None


def test_offline_sync_raises_network_unavailable(store, clock):
    sync = CatalogSync(store, lambda: _catalog(1), connectivity=Connectivity(online=False), clock=clock)
    with pytest.raises(NetworkUnavailable):
        sync.sync_from_remote()


def test_remote_error_propagates_from_foreground_sync(store, clock):
    def fetch():
        raise RemoteError("HTTP 404", status=404)

    sync = CatalogSync(store, fetch, clock=clock)
    with pytest.raises(RemoteError):
        sync.load_or_sync()


def test_overlapping_syncs_share_one_fetch(store, clock):
    release = threading.Event()
    started = threading.Event()
    calls = []

    def fetch():
        calls.append(1)
        started.set()
        assert release.wait(5)
        return _catalog(2)

    sync = CatalogSync(store, fetch, clock=clock)
    results = []
    leader = threading.Thread(target=lambda: results.append(sync.sync_from_remote()))
    leader.start()
    assert started.wait(5)

    follower = threading.Thread(target=lambda: results.append(sync.sync_from_remote()))
    follower.start()
    time.sleep(0.2)
    release.set()
    leader.join(5)
    follower.join(5)

    assert len(calls) == 1
    assert results == [2, 2]
    assert store.count_items() == 2


def test_background_resync_failure_is_swallowed(store, clock):
    def fetch():
        raise RemoteError("HTTP 500", status=500)

    sync = CatalogSync(store, fetch, clock=clock)
    thread = sync.resync_in_background()
    thread.join(5)
    assert not thread.is_alive()
    assert store.count_items() == 0


def test_background_resync_not_started_while_busy(store, clock):
    release = threading.Event()
    started = threading.Event()

    def fetch():
        started.set()
        release.wait(5)
        return _catalog(1)

    sync = CatalogSync(store, fetch, clock=clock)
    first = sync.resync_in_background()
    assert started.wait(5)
    assert sync.resync_in_background() is None
    release.set()
    first.join(5)


def test_toggle_favorite(store, clock):
    sync = CatalogSync(store, lambda: _catalog(1), clock=clock)
    sync.sync_from_remote()
    assert sync.toggle_favorite("skin-0") is True
    sync.sync_from_remote()
    assert store.get_item("skin-0").is_favorite is True
