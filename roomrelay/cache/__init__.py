"""On-disk resource cache."""

from roomrelay.cache.resource_cache import CacheEntry, ResourceCache

__all__ = ["CacheEntry", "ResourceCache"]
