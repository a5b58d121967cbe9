"""
Serializer Base
===============

A serializer turns one logical value (key, value, or header list) into
bytes and back. Every format handles None the same way: it encodes to
b"" and decodes back to None.
"""

from typing import Any, List, Tuple

Headers = Tuple[Tuple[str, bytes], ...]


class Serializer:
    """Base class for wire formats."""

    name = None
    content_type = None

    def encode(self, obj: Any) -> bytes:
        if obj is None:
            return b""
        return self._encode(obj)

    def decode(self, data: bytes) -> Any:
        if not data:
            return None
        return self._decode(data)

    def encode_headers(self, headers: Headers) -> bytes:
        raise NotImplementedError

    def decode_headers(self, data: bytes) -> Headers:
        raise NotImplementedError

    def _encode(self, obj: Any) -> bytes:
        raise NotImplementedError

    def _decode(self, data: bytes) -> Any:
        raise NotImplementedError

    @staticmethod
    def _header_pairs(items: List[Any]) -> Headers:
        return tuple((str(k), bytes(v)) for k, v in items)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
