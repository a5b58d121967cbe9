"""
JSON Serializer
===============

UTF-8 JSON text. Header values are opaque bytes, so they are carried
base64-encoded: [{"key": "__op", "value": "Yw=="}].
"""

import base64
import json
from typing import Any

from .base import Headers, Serializer


class JsonSerializer(Serializer):
    """JSON text format (application/json)."""

    name = "json"
    content_type = "application/json"

    def _encode(self, obj: Any) -> bytes:
        return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def _decode(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))

    def encode_headers(self, headers: Headers) -> bytes:
        entries = [
            {"key": name, "value": base64.b64encode(value).decode("ascii")}
            for name, value in headers
        ]
        return self._encode(entries)

    def decode_headers(self, data: bytes) -> Headers:
        if not data:
            return ()
        entries = self._decode(data)
        return self._header_pairs(
            (entry["key"], base64.b64decode(entry["value"])) for entry in entries
        )
