"""Image cache: content-hash keyed entries with staged finalize."""
from imgfetch.cache.handle import LIBRARY_CACHE_TYPE, CacheEntry, CacheHandle

__all__ = [
    "CacheEntry",
    "CacheHandle",
    "LIBRARY_CACHE_TYPE",
]
