import sqlite3

import pytest

from mirror.errors import StorageExhausted
from mirror.models import PricePoint, PriceStats

from .conftest import make_item


def test_ensure_db_is_idempotent(store):
    store.ensure_db()
    store.ensure_db()
    assert store.count_items() == 0
    assert store.stats()["price_history"] == 0


def test_upsert_items_preserves_favorite_and_replaces_fields(store):
    store.upsert_items([make_item("skin-1")])
    assert store.set_favorite("skin-1", True)

    store.upsert_items([make_item("skin-1", description="new description")])

    item = store.get_item("skin-1")
    assert item.is_favorite is True
    assert item.description == "new description"


def test_upsert_items_new_rows_are_not_favorites(store):
    store.upsert_items([make_item("skin-1", is_favorite=True)])
    assert store.get_item("skin-1").is_favorite is False


def test_upsert_items_does_not_duplicate(store):
    items = [make_item(str(i)) for i in range(20)]
    store.upsert_items(items)
    store.upsert_items(items)
    assert store.count_items() == 20


def test_upsert_items_keeps_created_at(store):
    store.upsert_items([make_item("skin-1")])
    created = store.get_item("skin-1").created_at
    store.upsert_items([make_item("skin-1", name="Renamed")])
    item = store.get_item("skin-1")
    assert item.created_at == created
    assert item.name == "Renamed"


def test_item_lists_round_trip(store):
    store.upsert_items([make_item("skin-1", crates=["Case A", "Case B"], stattrak=True)])
    item = store.get_item("skin-1")
    assert item.crates == ["Case A", "Case B"]
    assert item.wears == ["Factory New", "Field-Tested"]
    assert item.stattrak is True
    assert item.souvenir is False


def test_toggle_favorite(store):
    store.upsert_items([make_item("skin-1")])
    assert store.toggle_favorite("skin-1") is True
    assert store.toggle_favorite("skin-1") is False
    assert store.toggle_favorite("missing") is None
    assert store.set_favorite("missing", True) is False


def test_search_and_categories(store):
    store.upsert_items([
        make_item("1", name="AK-47 | Redline", category="Rifle", weapon="AK-47"),
        make_item("2", name="Glock-18 | Fade", category="Pistol", weapon="Glock-18"),
        make_item("3", name="AWP | Asiimov", category="Rifle", weapon="AWP"),
    ])
    store.set_favorite("3", True)

    assert [i.item_id for i in store.search_items("redline")] == ["1"]
    assert {i.item_id for i in store.search_items(category="Rifle")} == {"1", "3"}
    assert [i.item_id for i in store.search_items(favorites_only=True)] == ["3"]
    assert [i.item_id for i in store.search_items("glock", category="Rifle")] == []
    assert len(store.search_items("  ")) == 3
    assert store.get_categories() == ["Pistol", "Rifle"]
    assert [i.item_id for i in store.get_favorites()] == ["3"]


def test_price_cache_upsert_overwrites(store):
    store.upsert_prices({"AK-47 | Redline (Field-Tested)": PriceStats(price=10.0)})
    store.upsert_prices({"AK-47 | Redline (Field-Tested)": PriceStats(price=12.5, quantity=4)})
    snap = store.get_price("AK-47 | Redline (Field-Tested)")
    assert snap.price == 12.5
    assert snap.quantity == 4
    assert len(store.get_all_prices()) == 1


def test_append_history_drops_non_positive(store):
    written = store.append_history([
        PricePoint("k", 1.0, 1000),
        PricePoint("k", 0.0, 1000),
        PricePoint("k", -2.0, 1000),
    ])
    assert written == 1
    assert [p.price for p in store.get_history("k", 0)] == [1.0]


def test_history_is_ordered_and_filtered(store):
    store.append_history([PricePoint("k", 3.0, 3000), PricePoint("other", 9.0, 2500)])
    store.append_history([PricePoint("k", 1.0, 1000), PricePoint("k", 2.0, 2000)])
    assert [p.timestamp for p in store.get_history("k", 0)] == [1000, 2000, 3000]
    assert [p.timestamp for p in store.get_history("k", 2000)] == [2000, 3000]
    assert store.latest_history_timestamp() == 3000
    assert store.delete_history_before(2500) == 2
    assert [p.market_key for p in store.get_history("other", 0)] == ["other"]


def test_metadata_round_trip(store):
    assert store.get_metadata("lastCatalogSync") is None
    store.set_metadata("lastCatalogSync", 123456789)
    store.set_metadata("lastCatalogSync", 987654321)
    assert store.get_metadata("lastCatalogSync") == 987654321


def test_reset_clears_everything(store):
    store.upsert_items([make_item("skin-1")])
    store.upsert_prices({"k": PriceStats(price=1.0)})
    store.append_history([PricePoint("k", 1.0, 1000)])
    store.set_metadata("x", 1)

    store.reset()

    stats = store.stats()
    assert stats["items"] == 0
    assert stats["price_cache"] == 0
    assert stats["price_history"] == 0
    assert stats["sync_metadata"] == 0
    assert stats["size_bytes"] > 0


def test_disk_full_maps_to_storage_exhausted(store):
    with pytest.raises(StorageExhausted):
        with store._connect():
            raise sqlite3.OperationalError("database or disk is full")


def test_other_operational_errors_propagate(store):
    with pytest.raises(sqlite3.OperationalError):
        with store._connect() as con:
            con.execute("SELECT * FROM no_such_table")


def test_reset_succeeds_when_vacuum_has_no_room(store, vacuum_fails):
    store.upsert_items([make_item("skin-1")])
    store.append_history([PricePoint("k", 1.0, 1000)])

    store.reset()

    assert store.count_items() == 0
    assert store.stats()["price_history"] == 0
    assert store.vacuum() is False
