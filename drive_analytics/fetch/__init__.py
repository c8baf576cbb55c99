"""
Cancellable paginated retrieval with a persistent request cache.
"""
from drive_analytics.fetch.cancellation import CancellationToken
from drive_analytics.fetch.paginator import PaginatedFetcher, FetchResult, make_fetch_key
from drive_analytics.fetch.cache import (
    PersistentCache,
    RequestDeduplicator,
    CachedFetcher,
    make_cache_key,
)

__all__ = [
    'CancellationToken',
    'PaginatedFetcher',
    'FetchResult',
    'make_fetch_key',
    'PersistentCache',
    'RequestDeduplicator',
    'CachedFetcher',
    'make_cache_key',
]
