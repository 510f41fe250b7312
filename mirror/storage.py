# mirror/storage.py
import datetime
import json
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import pytz

from .errors import StorageExhausted
from .logger import get_logger
from .models import CatalogItem, PricePoint, PriceSnapshot, PriceStats

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS items (
    item_id TEXT PRIMARY KEY NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    weapon TEXT,
    category TEXT NOT NULL,
    pattern TEXT,
    rarity TEXT,
    rarity_color TEXT,
    min_float REAL DEFAULT 0,
    max_float REAL DEFAULT 1,
    wears TEXT,          -- JSON list of wear names
    stattrak INTEGER DEFAULT 0,
    souvenir INTEGER DEFAULT 0,
    crates TEXT,         -- JSON list of crate names
    collections TEXT,    -- JSON list of collection names
    team TEXT,
    image TEXT,
    is_favorite INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_items_category ON items(category);
CREATE INDEX IF NOT EXISTS idx_items_favorite ON items(is_favorite);

CREATE TABLE IF NOT EXISTS price_cache (
    market_key TEXT PRIMARY KEY NOT NULL,
    price REAL NOT NULL,
    min_price REAL,
    avg_price REAL,
    max_price REAL,
    quantity INTEGER,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS price_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    market_key TEXT NOT NULL,
    price REAL NOT NULL CHECK (price > 0),
    timestamp INTEGER NOT NULL   -- epoch milliseconds
);
CREATE INDEX IF NOT EXISTS idx_history_key_ts ON price_history(market_key, timestamp);
CREATE INDEX IF NOT EXISTS idx_history_ts ON price_history(timestamp);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY NOT NULL,
    value TEXT,
    updated_at TEXT
);
"""

ITEM_COLUMNS = (
    "item_id, name, description, weapon, category, pattern, rarity, rarity_color, "
    "min_float, max_float, wears, stattrak, souvenir, crates, collections, team, "
    "image, is_favorite, created_at, updated_at"
)


def now_utc_iso() -> str:
    return datetime.datetime.now(tz=pytz.UTC).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def _is_disk_full(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None and code == getattr(sqlite3, "SQLITE_FULL", 13):
        return True
    return "database or disk is full" in str(exc).lower()


def _row_to_item(row: sqlite3.Row) -> CatalogItem:
    return CatalogItem(
        item_id=row["item_id"],
        name=row["name"],
        description=row["description"] or "",
        weapon=row["weapon"] or "",
        category=row["category"],
        pattern=row["pattern"] or "",
        rarity=row["rarity"] or "",
        rarity_color=row["rarity_color"] or "",
        min_float=row["min_float"] if row["min_float"] is not None else 0.0,
        max_float=row["max_float"] if row["max_float"] is not None else 1.0,
        wears=json.loads(row["wears"]) if row["wears"] else [],
        stattrak=bool(row["stattrak"]),
        souvenir=bool(row["souvenir"]),
        crates=json.loads(row["crates"]) if row["crates"] else [],
        collections=json.loads(row["collections"]) if row["collections"] else [],
        team=row["team"] or "",
        image=row["image"] or "",
        is_favorite=bool(row["is_favorite"]),
        created_at=row["created_at"] or "",
        updated_at=row["updated_at"] or "",
    )


def _row_to_snapshot(row: sqlite3.Row) -> PriceSnapshot:
    return PriceSnapshot(
        market_key=row["market_key"],
        price=row["price"],
        min=row["min_price"] or 0.0,
        avg=row["avg_price"] or 0.0,
        max=row["max_price"] or 0.0,
        quantity=row["quantity"] or 0,
        updated_at=row["updated_at"] or "",
    )


class MirrorStore:
    """
    SQLite-backed store for the catalog, the current price cache, the price
    history log and sync bookkeeping.

    A connection is opened per operation so that the sync thread, the poll
    thread and readers never share one. Single-row read-modify-write happens
    inside BEGIN IMMEDIATE so concurrent writers serialize on the file lock.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        con = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        con.row_factory = sqlite3.Row
        try:
            yield con
        except sqlite3.OperationalError as e:
            if _is_disk_full(e):
                raise StorageExhausted(f"Local database {self.db_path} is full: {e}") from e
            raise
        finally:
            con.close()

    @contextmanager
    def _transaction(self, con: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
        cur = con.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
        except BaseException:
            if con.in_transaction:
                cur.execute("ROLLBACK")
            raise
        else:
            cur.execute("COMMIT")

    def ensure_db(self) -> None:
        with self._connect() as con:
            con.execute("PRAGMA journal_mode=WAL")
            con.execute("PRAGMA synchronous=NORMAL")
            con.executescript(SCHEMA_SQL)
        logger.debug("Database ready at %s", self.db_path)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def _write_item(self, cur: sqlite3.Cursor, item: CatalogItem, is_favorite: bool,
                    created_at: str, ts: str) -> None:
        cur.execute(
            f"""
            INSERT INTO items ({ITEM_COLUMNS})
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(item_id) DO UPDATE SET
                name=excluded.name,
                description=excluded.description,
                weapon=excluded.weapon,
                category=excluded.category,
                pattern=excluded.pattern,
                rarity=excluded.rarity,
                rarity_color=excluded.rarity_color,
                min_float=excluded.min_float,
                max_float=excluded.max_float,
                wears=excluded.wears,
                stattrak=excluded.stattrak,
                souvenir=excluded.souvenir,
                crates=excluded.crates,
                collections=excluded.collections,
                team=excluded.team,
                image=excluded.image,
                is_favorite=excluded.is_favorite,
                created_at=excluded.created_at,
                updated_at=excluded.updated_at
        """,
            (
                item.item_id,
                item.name,
                item.description,
                item.weapon,
                item.category,
                item.pattern,
                item.rarity,
                item.rarity_color,
                item.min_float,
                item.max_float,
                json.dumps(item.wears),
                1 if item.stattrak else 0,
                1 if item.souvenir else 0,
                json.dumps(item.crates),
                json.dumps(item.collections),
                item.team,
                item.image,
                1 if is_favorite else 0,
                created_at,
                ts,
            ),
        )

    def upsert_items(self, items: List[CatalogItem]) -> int:
        """
        Replace every given row except its favorite flag, which is carried over
        from the stored row (False for new rows). Each row commits on its own,
        so an interrupted run leaves whole rows only.
        """
        ts = now_utc_iso()
        count = 0
        with self._connect() as con:
            for item in items:
                with self._transaction(con) as cur:
                    cur.execute(
                        "SELECT is_favorite, created_at FROM items WHERE item_id=?",
                        (item.item_id,),
                    )
                    existing = cur.fetchone()
                    if existing is None:
                        is_favorite = False
                        created_at = item.created_at or ts
                    else:
                        is_favorite = bool(existing["is_favorite"])
                        created_at = existing["created_at"] or ts
                    self._write_item(cur, item, is_favorite, created_at, ts)
                count += 1
        return count

    def set_favorite(self, item_id: str, is_favorite: bool) -> bool:
        """Return False when no such item exists."""
        with self._connect() as con:
            with self._transaction(con) as cur:
                cur.execute(
                    "UPDATE items SET is_favorite=?, updated_at=? WHERE item_id=?",
                    (1 if is_favorite else 0, now_utc_iso(), item_id),
                )
                return cur.rowcount > 0

    def toggle_favorite(self, item_id: str) -> Optional[bool]:
        """Flip the flag atomically; return the new value or None if missing."""
        with self._connect() as con:
            with self._transaction(con) as cur:
                cur.execute("SELECT is_favorite FROM items WHERE item_id=?", (item_id,))
                row = cur.fetchone()
                if row is None:
                    return None
                flipped = not bool(row["is_favorite"])
                cur.execute(
                    "UPDATE items SET is_favorite=?, updated_at=? WHERE item_id=?",
                    (1 if flipped else 0, now_utc_iso(), item_id),
                )
                return flipped

    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {ITEM_COLUMNS} FROM items WHERE item_id=?", (item_id,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def get_all_items(self) -> List[CatalogItem]:
        with self._connect() as con:
            rows = con.execute(f"SELECT {ITEM_COLUMNS} FROM items ORDER BY name").fetchall()
        return [_row_to_item(r) for r in rows]

    def get_favorites(self) -> List[CatalogItem]:
        with self._connect() as con:
            rows = con.execute(
                f"SELECT {ITEM_COLUMNS} FROM items WHERE is_favorite=1 ORDER BY name"
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def search_items(self, query: str = "", category: str = "All",
                     favorites_only: bool = False) -> List[CatalogItem]:
        sql = f"SELECT {ITEM_COLUMNS} FROM items WHERE 1=1"
        params: List[Any] = []
        if favorites_only:
            sql += " AND is_favorite=1"
        if category and category != "All":
            sql += " AND category=?"
            params.append(category)
        if query and query.strip():
            term = f"%{query.strip()}%"
            sql += " AND (name LIKE ? OR weapon LIKE ? OR category LIKE ?)"
            params.extend([term, term, term])
        sql += " ORDER BY name"

        with self._connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [_row_to_item(r) for r in rows]

    def get_categories(self) -> List[str]:
        with self._connect() as con:
            rows = con.execute("SELECT DISTINCT category FROM items ORDER BY category").fetchall()
        return [r["category"] for r in rows]

    def count_items(self) -> int:
        with self._connect() as con:
            row = con.execute("SELECT COUNT(*) FROM items").fetchone()
        return row[0] if row and row[0] is not None else 0

    # ------------------------------------------------------------------
    # Price cache
    # ------------------------------------------------------------------

    def upsert_prices(self, prices: Dict[str, PriceStats]) -> int:
        ts = now_utc_iso()
        with self._connect() as con:
            for key, stats in prices.items():
                with self._transaction(con) as cur:
                    cur.execute(
                        """
                        INSERT INTO price_cache (
                            market_key, price, min_price, avg_price, max_price, quantity, updated_at
                        )
                        VALUES (?,?,?,?,?,?,?)
                        ON CONFLICT(market_key) DO UPDATE SET
                            price=excluded.price,
                            min_price=excluded.min_price,
                            avg_price=excluded.avg_price,
                            max_price=excluded.max_price,
                            quantity=excluded.quantity,
                            updated_at=excluded.updated_at
                    """,
                        (key, stats.price, stats.min, stats.avg, stats.max, stats.quantity, ts),
                    )
        return len(prices)

    def get_price(self, market_key: str) -> Optional[PriceSnapshot]:
        with self._connect() as con:
            row = con.execute(
                "SELECT * FROM price_cache WHERE market_key=?", (market_key,)
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def get_all_prices(self) -> Dict[str, PriceSnapshot]:
        with self._connect() as con:
            rows = con.execute("SELECT * FROM price_cache").fetchall()
        return {r["market_key"]: _row_to_snapshot(r) for r in rows}

    # ------------------------------------------------------------------
    # Price history
    # ------------------------------------------------------------------

    def latest_history_timestamp(self) -> Optional[int]:
        with self._connect() as con:
            row = con.execute("SELECT MAX(timestamp) FROM price_history").fetchone()
        return row[0] if row and row[0] is not None else None

    def append_history(self, points: List[PricePoint]) -> int:
        """Insert points in one transaction; non-positive prices are dropped."""
        rows = [(p.market_key, p.price, p.timestamp) for p in points if p.price > 0]
        if not rows:
            return 0
        with self._connect() as con:
            with self._transaction(con) as cur:
                cur.executemany(
                    "INSERT INTO price_history (market_key, price, timestamp) VALUES (?,?,?)",
                    rows,
                )
        return len(rows)

    def get_history(self, market_key: str, since_ms: int) -> List[PricePoint]:
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT market_key, price, timestamp
                FROM price_history
                WHERE market_key=? AND timestamp >= ?
                ORDER BY timestamp ASC, id ASC
            """,
                (market_key, since_ms),
            ).fetchall()
        return [PricePoint(r["market_key"], r["price"], r["timestamp"]) for r in rows]

    def delete_history_before(self, cutoff_ms: int) -> int:
        with self._connect() as con:
            with self._transaction(con) as cur:
                cur.execute("DELETE FROM price_history WHERE timestamp < ?", (cutoff_ms,))
                return cur.rowcount

    # ------------------------------------------------------------------
    # Sync metadata
    # ------------------------------------------------------------------

    def set_metadata(self, key: str, value: Any) -> None:
        with self._connect() as con:
            with self._transaction(con) as cur:
                cur.execute(
                    """
                    INSERT INTO sync_metadata (key, value, updated_at) VALUES (?,?,?)
                    ON CONFLICT(key) DO UPDATE SET
                        value=excluded.value,
                        updated_at=excluded.updated_at
                """,
                    (key, json.dumps(value), now_utc_iso()),
                )

    def get_metadata(self, key: str) -> Any:
        with self._connect() as con:
            row = con.execute("SELECT value FROM sync_metadata WHERE key=?", (key,)).fetchone()
        return json.loads(row["value"]) if row and row["value"] is not None else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """
        Drop every row in every table. Used by the clear-and-resync recovery
        path, so it must succeed on a full disk; the VACUUM that gives the
        space back to the filesystem is best-effort.
        """
        with self._connect() as con:
            with self._transaction(con) as cur:
                for table in ("items", "price_cache", "price_history", "sync_metadata"):
                    cur.execute(f"DELETE FROM {table}")
        logger.warning("Local database %s was reset.", self.db_path)
        self.vacuum()

    def vacuum(self) -> bool:
        """Compact the database file. Returns False when there was no room to rebuild it."""
        try:
            with self._connect() as con:
                con.execute("VACUUM")
        except StorageExhausted as e:
            logger.warning("VACUUM skipped; freed pages stay in %s until the next one: %s", self.db_path, e)
            return False
        return True

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        with self._connect() as con:
            for table in ("items", "price_cache", "price_history", "sync_metadata"):
                out[table] = con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            out["favorites"] = con.execute(
                "SELECT COUNT(*) FROM items WHERE is_favorite=1"
            ).fetchone()[0]
        out["size_bytes"] = os.path.getsize(self.db_path) if os.path.exists(self.db_path) else 0
        return out
