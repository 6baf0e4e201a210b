"""
Cache coordination engine.

Keeps a shared key-value cache consistent with an authoritative store
(read-through, write-through, write-behind, cache-aside), evicts entries on
request, and provides distributed locks and fixed-window rate limits over
the same backend.
"""

from .backend import CacheBackend, MemoryBackend, RedisBackend, create_backend
from .coordinator import CacheCoordinator
from .invalidation import InvalidationEvent, InvalidationManager
from .locking import Lock, LockManager
from .ratelimit import FixedWindowRateLimiter, RateWindow
from .repository import CachedRepository
from .shared.config import CacheSettings, get_settings
from .shared.errors import (
    BackendUnavailable,
    CacheEngineException,
    FlushExhausted,
    InvalidKeyError,
    LoaderFailed,
    LockTimeout,
    RateLimitExceeded,
    SaverFailed,
    WriteBehindNotConfigured,
)
from .store import CacheEntry, EntryStore, make_key
from .strategies import CacheLookup, StrategyEngine, WriteBehindQueue

__version__ = "1.0.0"

__all__ = [
    "BackendUnavailable",
    "CacheBackend",
    "CacheCoordinator",
    "CacheEngineException",
    "CacheEntry",
    "CacheLookup",
    "CacheSettings",
    "CachedRepository",
    "EntryStore",
    "FixedWindowRateLimiter",
    "FlushExhausted",
    "InvalidKeyError",
    "InvalidationEvent",
    "InvalidationManager",
    "LoaderFailed",
    "Lock",
    "LockManager",
    "LockTimeout",
    "MemoryBackend",
    "RateLimitExceeded",
    "RateWindow",
    "RedisBackend",
    "SaverFailed",
    "StrategyEngine",
    "WriteBehindNotConfigured",
    "WriteBehindQueue",
    "create_backend",
    "get_settings",
    "make_key",
]
