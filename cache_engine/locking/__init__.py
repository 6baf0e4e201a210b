"""
Distributed lock package.

Locks are backend keys written with set-if-absent and a TTL; the random
token stored in the key proves ownership at release and renewal.
"""

from .lock_manager import Lock, LockManager

__all__ = ["Lock", "LockManager"]
