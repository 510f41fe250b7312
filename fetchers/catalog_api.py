# fetchers/catalog_api.py
from typing import Any, List, Optional

import requests

from mirror.errors import RemoteError
from mirror.logger import get_logger
from mirror.models import CatalogItem

from . import transport

logger = get_logger(__name__)

_CATEGORY_KEYWORDS = [
    ("Knife", ("knife", "bayonet", "karambit", "daggers")),
    ("Gloves", ("gloves", "glove", "hand wraps")),
    ("Rifle", (
        "ak-47", "m4a4", "m4a1", "aug", "sg 553", "famas", "galil",
        "awp", "ssg 08", "scar-20", "g3sg1",
    )),
    ("Pistol", (
        "glock", "usp", "p2000", "p250", "five-seven", "tec-9", "cz75",
        "desert eagle", "dual berettas", "r8 revolver",
    )),
    ("SMG", ("mac-10", "mp9", "mp7", "mp5", "ump-45", "p90", "pp-bizon")),
    ("Shotgun", ("nova", "xm1014", "mag-7", "sawed-off")),
    ("Machine Gun", ("m249", "negev")),
]


def determine_category(weapon_name: str) -> str:
    """Map a weapon name onto one of the catalog's browse categories."""
    name = (weapon_name or "").lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in name for k in keywords):
            return category
    return "Other"


def _nested_name(obj: Any) -> str:
    if isinstance(obj, dict):
        return str(obj.get("name") or "")
    if isinstance(obj, str):
        return obj
    return ""


def _names(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    return [n for n in (_nested_name(v) for v in values) if n]


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def normalize_skin(raw: dict) -> Optional[CatalogItem]:
    """Flatten one catalog record; records without an id are dropped."""
    item_id = raw.get("id")
    if not item_id:
        return None

    weapon = _nested_name(raw.get("weapon"))
    if weapon:
        category = determine_category(weapon)
    else:
        category = _nested_name(raw.get("category")) or "Other"
    rarity = raw.get("rarity") if isinstance(raw.get("rarity"), dict) else {}

    return CatalogItem(
        item_id=str(item_id),
        name=str(raw.get("name") or "Unknown"),
        category=category,
        description=str(raw.get("description") or ""),
        weapon=weapon,
        pattern=_nested_name(raw.get("pattern")),
        rarity=str(rarity.get("name") or ""),
        rarity_color=str(rarity.get("color") or ""),
        min_float=_as_float(raw.get("min_float"), 0.0),
        max_float=_as_float(raw.get("max_float"), 1.0),
        wears=_names(raw.get("wears")),
        stattrak=bool(raw.get("stattrak")),
        souvenir=bool(raw.get("souvenir")),
        crates=_names(raw.get("crates")),
        collections=_names(raw.get("collections")),
        team=_nested_name(raw.get("team")),
        image=str(raw.get("image") or ""),
    )


def fetch_catalog(
    base_url: str,
    timeout: float = 30,
    session: Optional[requests.Session] = None,
) -> List[CatalogItem]:
    """Fetch the full skin catalog and normalize it into CatalogItems."""
    url = f"{base_url.rstrip('/')}/skins.json"
    logger.info("Fetching catalog from %s", url)

    data = transport.get_json(session or transport.new_session(), url, timeout=timeout)
    if not isinstance(data, list):
        raise RemoteError(f"Catalog at {url} is not a list (got {type(data).__name__}).")

    items: List[CatalogItem] = []
    dropped = 0
    for raw in data:
        item = normalize_skin(raw) if isinstance(raw, dict) else None
        if item is None:
            dropped += 1
            continue
        items.append(item)

    if dropped:
        logger.warning("Dropped %d catalog records without an id.", dropped)
    logger.info("Catalog: fetched %d items from %s", len(items), url)
    return items
