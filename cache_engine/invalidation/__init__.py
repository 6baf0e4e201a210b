"""
Invalidation package.

Explicit, tag-group and pattern eviction, plus optional pub/sub broadcast
so cooperating processes can drop their own copies.
"""

from .manager import InvalidationEvent, InvalidationManager

__all__ = ["InvalidationEvent", "InvalidationManager"]
