"""
Avro Serializer
===============

Compact binary, schema-based format built on fastavro. The writer schema
is inferred from the value and embedded in an Avro object container, so
each message can be decoded on its own.

Supported value types: None, bool, int, float, str, bytes, dict (record)
and list (array). Anything else, or a dict key that is not a valid Avro
name, is rejected.
"""

import io
import re
from typing import Any, Dict, List

import fastavro

from .base import Headers, Serializer

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

HEADERS_SCHEMA = {
    "type": "array",
    "items": {
        "type": "record",
        "name": "Header",
        "namespace": "capture",
        "fields": [
            {"name": "key", "type": "string"},
            {"name": "value", "type": "bytes"},
        ],
    },
}


def _nullable(schema: Any) -> Any:
    if schema == "null":
        return "null"
    if isinstance(schema, list):
        return schema if "null" in schema else ["null"] + schema
    return ["null", schema]


def infer_schema(value: Any, name: str = "Value") -> Any:
    """
    Infer an Avro schema for a Python value.

    Args:
        value: Value to describe
        name: Record name (nested records get path-qualified names)

    Returns:
        Avro schema (str, list or dict)
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "long"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (bytes, bytearray)):
        return "bytes"
    if isinstance(value, dict):
        fields = []
        for field_name, field_value in value.items():
            if not isinstance(field_name, str) or not _NAME_PATTERN.match(field_name):
                raise ValueError(f"Invalid Avro field name: {field_name!r}")
            fields.append({
                "name": field_name,
                "type": _nullable(infer_schema(field_value, f"{name}_{field_name}")),
            })
        return {"type": "record", "name": name, "fields": fields}
    if isinstance(value, (list, tuple)):
        return {"type": "array", "items": _array_items(value, name)}
    raise TypeError(f"Unsupported type for Avro: {type(value).__name__}")


def _array_items(values: List[Any], name: str) -> Any:
    branches: List[Any] = []
    seen = set()
    for index, item in enumerate(values):
        schema = infer_schema(item, f"{name}_item{index}")
        # a union holds at most one record and one array branch, taken from
        # the first element of that kind
        kind = schema["type"] if isinstance(schema, dict) else schema
        if kind not in seen:
            seen.add(kind)
            branches.append(schema)
    if not branches:
        return "null"
    if len(branches) == 1:
        return branches[0]
    return branches


class AvroSerializer(Serializer):
    """Avro object container format (application/avro)."""

    name = "avro"
    content_type = "application/avro"

    def _write(self, schema: Any, datum: Any) -> bytes:
        parsed = fastavro.parse_schema(schema)
        buffer = io.BytesIO()
        fastavro.writer(buffer, parsed, [datum])
        return buffer.getvalue()

    def _read(self, data: bytes) -> Any:
        records = list(fastavro.reader(io.BytesIO(data)))
        if len(records) != 1:
            raise ValueError(f"Expected exactly one Avro datum, found {len(records)}")
        return records[0]

    def _encode(self, obj: Any) -> bytes:
        schema = infer_schema(obj)
        if schema == "null":
            return b""
        return self._write(schema, obj)

    def _decode(self, data: bytes) -> Any:
        return self._read(data)

    def encode_headers(self, headers: Headers) -> bytes:
        entries: List[Dict[str, Any]] = [{"key": k, "value": v} for k, v in headers]
        return self._write(HEADERS_SCHEMA, entries)

    def decode_headers(self, data: bytes) -> Headers:
        if not data:
            return ()
        return self._header_pairs((entry["key"], entry["value"]) for entry in self._read(data))
