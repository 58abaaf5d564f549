"""
The per-document SDE cache and everything that reads or writes it.
"""

from sdesync.cache.models import (
    CacheElement,
    FactNode,
    NodeFlags,
    SdeCache,
    SdeItem,
    SyncStatistics,
    SyncStatus,
)
from sdesync.cache.store import load_cache, save_cache

__all__ = [
    "CacheElement",
    "FactNode",
    "NodeFlags",
    "SdeCache",
    "SdeItem",
    "SyncStatistics",
    "SyncStatus",
    "load_cache",
    "save_cache",
]
