# mirror/config.py
import os
from dataclasses import dataclass

DEFAULT_CATALOG_API_URL = "https://bymykel.github.io/CSGO-API/api/en"
DEFAULT_PRICE_FEED_URL = "https://csfloat.com/api/v1/listings/price-list"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    db_path: str = "/data/market_mirror.sqlite3"
    poll_minutes: int = 30
    history_retention_days: int = 30
    catalog_stale_hours: int = 24
    cloud_timeout_seconds: float = 5.0
    resume_debounce_minutes: int = 5
    http_timeout_seconds: float = 30.0
    catalog_api_url: str = DEFAULT_CATALOG_API_URL
    price_feed_url: str = DEFAULT_PRICE_FEED_URL
    price_feed_api_key: str = ""
    supabase_url: str = ""
    supabase_key: str = ""
    mode: str = "daemon"  # "daemon", "once", "reset" or "cleanup"

    @property
    def poll_interval_seconds(self) -> float:
        return max(1, self.poll_minutes) * 60.0

    @property
    def catalog_stale_ms(self) -> int:
        return self.catalog_stale_hours * 60 * 60 * 1000

    @property
    def resume_debounce_seconds(self) -> float:
        return self.resume_debounce_minutes * 60.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("DB_PATH", cls.db_path),
            poll_minutes=_env_int("POLL_MINUTES", cls.poll_minutes),
            history_retention_days=_env_int("HISTORY_RETENTION_DAYS", cls.history_retention_days),
            catalog_stale_hours=_env_int("CATALOG_STALE_HOURS", cls.catalog_stale_hours),
            cloud_timeout_seconds=_env_float("CLOUD_TIMEOUT_SECONDS", cls.cloud_timeout_seconds),
            resume_debounce_minutes=_env_int("RESUME_DEBOUNCE_MINUTES", cls.resume_debounce_minutes),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
            catalog_api_url=os.getenv("CATALOG_API_URL", cls.catalog_api_url).rstrip("/"),
            price_feed_url=os.getenv("PRICE_FEED_URL", cls.price_feed_url),
            price_feed_api_key=os.getenv("PRICE_FEED_API_KEY", "").strip(),
            supabase_url=os.getenv("SUPABASE_URL", "").strip().rstrip("/"),
            supabase_key=os.getenv("SUPABASE_KEY", "").strip(),
            mode=os.getenv("MODE", cls.mode).lower(),
        )
