"""
Cache consistency strategies.

`StrategyEngine` exposes read-through (`get`), write-through (`put`),
write-behind (`put_async`) and cache-aside (`get_manual`/`set_manual`)
access. Loads are collapsed per key by `SingleFlight`; deferred writes are
drained by `WriteBehindQueue`.
"""

from .engine import CacheLookup, StrategyEngine
from .serializers import JsonSerializer, RawSerializer, Serializer
from .singleflight import SingleFlight
from .write_behind import DeadLetter, FlushReport, PendingWrite, WriteBehindQueue

__all__ = [
    "CacheLookup",
    "DeadLetter",
    "FlushReport",
    "JsonSerializer",
    "PendingWrite",
    "RawSerializer",
    "Serializer",
    "SingleFlight",
    "StrategyEngine",
    "WriteBehindQueue",
]
