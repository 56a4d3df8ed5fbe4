"""Two-tier response cache for generated artifacts."""

from .keys import entity_prefix, hash_context, make_cache_key, normalize_context
from .lru import LRUCache
from .pricing import ModelPrice, PriceTable
from .response import CacheEntry, CacheStats, ResponseCache

__all__ = [
    "CacheEntry",
    "CacheStats",
    "LRUCache",
    "ModelPrice",
    "PriceTable",
    "ResponseCache",
    "entity_prefix",
    "hash_context",
    "make_cache_key",
    "normalize_context",
]
