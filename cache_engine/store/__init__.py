"""
Entry Store package.

Maps logical cache keys (``product:42``) to namespaced backend keys and
keeps the secondary indexes used for group and pattern invalidation.
"""

from .entry_store import EntryStore
from .models import CacheEntry, RESERVED_PREFIXES, make_key, validate_key

__all__ = ["CacheEntry", "EntryStore", "RESERVED_PREFIXES", "make_key", "validate_key"]
