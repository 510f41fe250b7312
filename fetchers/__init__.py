# fetchers/__init__.py
from . import catalog_api
from . import price_feed
from .cloud_replica import CloudReplica

__all__ = ["catalog_api", "price_feed", "CloudReplica"]
