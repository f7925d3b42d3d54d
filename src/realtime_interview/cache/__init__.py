"""
Session cache module.

Holds the live, TTL-bounded state of each interview session.
"""

from realtime_interview.cache.backends import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    StoreUnavailableError,
)
from realtime_interview.cache.session_cache import SessionCache, initialize_session_cache

__all__ = [
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "SessionCache",
    "StoreUnavailableError",
    "initialize_session_cache",
]
