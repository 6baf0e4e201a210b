"""
Rate limiting package.

Fixed-window counters built on the backend's atomic increment and expire.
"""

from .fixed_window import FixedWindowRateLimiter, RateWindow

__all__ = ["FixedWindowRateLimiter", "RateWindow"]
