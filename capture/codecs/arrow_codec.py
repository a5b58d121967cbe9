"""
Arrow Serializer
================

Columnar binary format: each value is written as a one-row table in the
Arrow IPC stream format. Dict values become one column per field; any
other value is stored in a single "value" column. The shape is recorded
in the schema metadata so decode returns the value that was encoded.
"""

from typing import Any

import pyarrow as pa

from .base import Headers, Serializer

_KIND_KEY = b"capture.kind"
KIND_RECORD = b"record"
KIND_SCALAR = b"scalar"
KIND_EMPTY = b"empty"

HEADERS_SCHEMA = pa.schema([("key", pa.string()), ("value", pa.binary())])


def _to_ipc(table: pa.Table) -> bytes:
    sink = pa.BufferOutputStream()
    with pa.ipc.new_stream(sink, table.schema) as writer:
        writer.write_table(table)
    return sink.getvalue().to_pybytes()


def _from_ipc(data: bytes) -> pa.Table:
    return pa.ipc.open_stream(pa.py_buffer(data)).read_all()


class ArrowSerializer(Serializer):
    """Arrow IPC stream format (application/vnd.apache.arrow.stream)."""

    name = "arrow"
    content_type = "application/vnd.apache.arrow.stream"

    def _encode(self, obj: Any) -> bytes:
        if isinstance(obj, dict) and obj:
            kind = KIND_RECORD
            table = pa.Table.from_pylist([obj])
        elif isinstance(obj, dict):
            kind = KIND_EMPTY
            table = pa.table({})
        else:
            kind = KIND_SCALAR
            table = pa.table({"value": pa.array([obj])})
        table = table.replace_schema_metadata({_KIND_KEY: kind})
        return _to_ipc(table)

    def _decode(self, data: bytes) -> Any:
        table = _from_ipc(data)
        kind = (table.schema.metadata or {}).get(_KIND_KEY, KIND_RECORD)
        if kind == KIND_EMPTY:
            return {}
        rows = table.to_pylist()
        if len(rows) != 1:
            raise ValueError(f"Expected exactly one Arrow row, found {len(rows)}")
        if kind == KIND_SCALAR:
            return rows[0]["value"]
        return rows[0]

    def encode_headers(self, headers: Headers) -> bytes:
        table = pa.table(
            [
                pa.array([name for name, _ in headers], type=pa.string()),
                pa.array([value for _, value in headers], type=pa.binary()),
            ],
            schema=HEADERS_SCHEMA,
        )
        return _to_ipc(table)

    def decode_headers(self, data: bytes) -> Headers:
        if not data:
            return ()
        table = _from_ipc(data)
        return self._header_pairs((row["key"], row["value"]) for row in table.to_pylist())
