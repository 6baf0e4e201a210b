"""
Cache entry record and its wire envelope.
"""

import json
from dataclasses import dataclass, field
from typing import Optional, Tuple

from ..shared.errors import InvalidKeyError

NAMESPACE_PREFIX = "ns:"
LOCK_PREFIX = "lock:"
RATE_LIMIT_PREFIX = "rl:"
INDEX_PREFIX = "idx:"
RESERVED_PREFIXES = (NAMESPACE_PREFIX, LOCK_PREFIX, RATE_LIMIT_PREFIX, INDEX_PREFIX)


def validate_key(key: str) -> str:
    """Reject empty keys and keys that would collide with internal prefixes."""
    if not isinstance(key, str) or not key:
        raise InvalidKeyError(str(key), "Cache key must be a non-empty string")
    for prefix in RESERVED_PREFIXES:
        if key.startswith(prefix):
            raise InvalidKeyError(key, f"Cache key may not start with reserved prefix {prefix!r}")
    return key


def make_key(type_tag: str, identifier) -> str:
    """Compose a logical key such as ``product:42``."""
    return validate_key(f"{type_tag}:{identifier}")


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its lifetime."""

    key: str
    value: bytes
    created_at: float
    expires_at: Optional[float] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def ttl_remaining(self, now: float) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - now)

    def encode(self) -> bytes:
        """Header line of JSON metadata followed by the raw value bytes.

        Expiry is not part of the envelope: the backend owns the TTL, so a
        refresh never has to rewrite the value.
        """
        header = json.dumps({"c": self.created_at, "t": list(self.tags)}, separators=(",", ":"))
        return header.encode("utf-8") + b"\n" + self.value

    @classmethod
    def decode(cls, key: str, payload: bytes, expires_at: Optional[float] = None) -> "CacheEntry":
        header, sep, value = payload.partition(b"\n")
        if not sep:
            raise ValueError(f"Malformed cache envelope for {key}")
        meta = json.loads(header.decode("utf-8"))
        return cls(
            key=key,
            value=value,
            created_at=float(meta["c"]),
            expires_at=expires_at,
            tags=tuple(meta.get("t") or ()),
        )


def decode_value(key: str, payload: bytes) -> bytes:
    """Strip the envelope header without parsing it."""
    header, sep, value = payload.partition(b"\n")
    if not sep:
        raise ValueError(f"Malformed cache envelope for {key}")
    return value
