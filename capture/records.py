"""
Change Records
==============

In-memory representation of captured row changes.

A ChangeRecord carries:
- key: identifies the row (usually the primary key columns)
- value: change envelope {"op", "before", "after", "source", "ts_ms"},
  or None for a tombstone
- headers: ordered (name, bytes) pairs
- partition / position: where the change came from, used only for
  checkpointing and never part of the payload
"""

from typing import Any, Dict, Iterable, Optional, Tuple

# Operation codes used in the change envelope
OP_CREATE = "c"
OP_UPDATE = "u"
OP_DELETE = "d"
OP_READ = "r"

OPERATIONS = (OP_CREATE, OP_UPDATE, OP_DELETE, OP_READ)

Headers = Tuple[Tuple[str, bytes], ...]


class _Dropped:
    """Sentinel for records suppressed by the flattener."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DROPPED"

    def __bool__(self) -> bool:
        return False


DROPPED = _Dropped()


def normalize_headers(headers: Optional[Iterable[Tuple[str, Any]]]) -> Headers:
    """Coerce header pairs to a tuple of (str, bytes)."""
    if not headers:
        return ()
    normalized = []
    for name, value in headers:
        if value is None:
            value = b""
        elif isinstance(value, str):
            value = value.encode("utf-8")
        elif not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"Header {name!r} value must be bytes or str, got {type(value).__name__}")
        normalized.append((str(name), bytes(value)))
    return tuple(normalized)


class ChangeRecord:
    """
    One captured mutation. Immutable once created.

    Args:
        key: Row identity (dict of key columns, scalar, or None)
        value: Change envelope dict, or None for a tombstone
        partition: Source partition id (e.g. the server name)
        position: Source position token (JSON-serializable)
        headers: Ordered (name, bytes) pairs
        topic: Logical destination, e.g. "server.db.table"
    """

    __slots__ = ("_key", "_value", "_partition", "_position", "_headers", "_topic")

    def __init__(
        self,
        key: Any,
        value: Optional[Dict[str, Any]],
        partition: str,
        position: Any,
        headers: Optional[Iterable[Tuple[str, Any]]] = None,
        topic: Optional[str] = None,
    ):
        if not partition:
            raise ValueError("ChangeRecord requires a partition id")
        object.__setattr__(self, "_key", key)
        object.__setattr__(self, "_value", value)
        object.__setattr__(self, "_partition", str(partition))
        object.__setattr__(self, "_position", position)
        object.__setattr__(self, "_headers", normalize_headers(headers))
        object.__setattr__(self, "_topic", topic)

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def key(self) -> Any:
        return self._key

    @property
    def value(self) -> Optional[Dict[str, Any]]:
        return self._value

    @property
    def partition(self) -> str:
        return self._partition

    @property
    def position(self) -> Any:
        return self._position

    @property
    def headers(self) -> Headers:
        return self._headers

    @property
    def topic(self) -> Optional[str]:
        return self._topic

    @property
    def is_tombstone(self) -> bool:
        return self._value is None

    @property
    def operation(self) -> Optional[str]:
        """Envelope operation code, or None for tombstones and flattened values."""
        if isinstance(self._value, dict):
            op = self._value.get("op")
            if op in OPERATIONS:
                return op
        return None

    @property
    def is_delete(self) -> bool:
        return self.operation == OP_DELETE

    def header(self, name: str) -> Optional[bytes]:
        """Return the last header value with this name."""
        found = None
        for header_name, value in self._headers:
            if header_name == name:
                found = value
        return found

    def replace(self, **changes) -> "ChangeRecord":
        """Return a copy with some attributes replaced."""
        fields = {
            "key": self._key,
            "value": self._value,
            "partition": self._partition,
            "position": self._position,
            "headers": self._headers,
            "topic": self._topic,
        }
        fields.update(changes)
        return type(self)(**fields)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ChangeRecord):
            return NotImplemented
        return (
            self._key == other._key
            and self._value == other._value
            and self._partition == other._partition
            and self._position == other._position
            and self._headers == other._headers
            and self._topic == other._topic
        )

    def __hash__(self):
        return hash((self._partition, repr(self._position), repr(self._key)))

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(partition={self._partition!r}, position={self._position!r}, "
            f"key={self._key!r}, op={self.operation!r})"
        )


class FlattenedRecord(ChangeRecord):
    """ChangeRecord whose value has been reshaped by the flattener."""

    __slots__ = ()

    @classmethod
    def from_record(cls, record: ChangeRecord, value: Any, headers: Optional[Headers] = None) -> "FlattenedRecord":
        return cls(
            key=record.key,
            value=value,
            partition=record.partition,
            position=record.position,
            headers=record.headers if headers is None else headers,
            topic=record.topic,
        )
