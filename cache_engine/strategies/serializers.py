"""
Value serializers used between callers and the Entry Store.
"""

import json
from typing import Any


class Serializer:
    """Converts caller values to the bytes stored in the cache."""

    def dumps(self, value: Any) -> bytes:
        raise NotImplementedError

    def loads(self, data: bytes) -> Any:
        raise NotImplementedError


class JsonSerializer(Serializer):
    """UTF-8 JSON; the default for domain objects."""

    def __init__(self, **dump_kwargs):
        self.dump_kwargs = {"separators": (",", ":"), "default": str}
        self.dump_kwargs.update(dump_kwargs)

    def dumps(self, value: Any) -> bytes:
        return json.dumps(value, **self.dump_kwargs).encode("utf-8")

    def loads(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


class RawSerializer(Serializer):
    """Passes bytes through untouched; str is encoded as UTF-8."""

    def dumps(self, value: Any) -> bytes:
        if isinstance(value, str):
            return value.encode("utf-8")
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        raise TypeError(f"RawSerializer cannot store {type(value).__name__}")

    def loads(self, data: bytes) -> Any:
        return data
