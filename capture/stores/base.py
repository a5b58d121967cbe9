"""
Offset Store Base
=================

Durable key/value store for offset records: source partition id ->
source position. Positions are JSON-serializable; durable backends
persist them as JSON text.
"""

import json
import threading
from typing import Any, Dict, Optional

from ..errors import OffsetStoreError


def dump_position(position: Any) -> str:
    try:
        return json.dumps(position, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise OffsetStoreError(f"Position is not JSON-serializable: {e}", {"position": repr(position)}) from e


def load_position(text: Optional[str]) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError as e:
        raise OffsetStoreError(f"Stored position is not valid JSON: {e}", {"value": text}) from e


class OffsetStore:
    """
    Base offset store.

    get() returns None when nothing is stored for a partition. set() and
    flush() raise OffsetStoreError on failure. Reads may happen from other
    threads while the engine worker writes, so the in-memory view is
    guarded by a lock.
    """

    name = "base"

    def __init__(self):
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}

    def start(self):
        """Open resources and load persisted offsets."""

    def get(self, partition: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(partition)

    def set(self, partition: str, position: Any):
        with self._lock:
            self._data[partition] = position

    def flush(self):
        """Force buffered writes to durable media."""

    def close(self):
        """Release resources."""

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
