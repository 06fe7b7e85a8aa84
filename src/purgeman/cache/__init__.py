"""Cache invalidation for Varnish front-ends."""

from purgeman.cache.purge import CacheTarget, PurgeDispatcher, PurgeResult

__all__ = [
    "CacheTarget",
    "PurgeDispatcher",
    "PurgeResult",
]
