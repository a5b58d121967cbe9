"""
Offset Tracking
===============

The in-memory checkpoint of how far the engine has read, one source
position per partition. It is owned by the engine worker thread and only
advanced after a record has been delivered (or validly dropped).
"""

import copy
from typing import Any, Dict, Iterator, Optional, Tuple


class Offset:
    """
    Mapping of source partition id -> source position token.

    Tracks which partitions changed since the last flush so the engine
    writes only those to the offset store.
    """

    def __init__(self, positions: Optional[Dict[str, Any]] = None):
        self._positions: Dict[str, Any] = dict(positions or {})
        self._changed = set()

    def get(self, partition: str) -> Optional[Any]:
        return self._positions.get(partition)

    def update(self, partition: str, position: Any):
        """Advance a partition to a new position."""
        self._positions[partition] = position
        self._changed.add(partition)

    def changed(self) -> Dict[str, Any]:
        """Positions updated since the last flush."""
        return {p: self._positions[p] for p in self._changed}

    def mark_flushed(self, partitions=None):
        """Forget change tracking for flushed partitions (all by default)."""
        if partitions is None:
            self._changed.clear()
        else:
            self._changed.difference_update(partitions)

    @property
    def has_changes(self) -> bool:
        return bool(self._changed)

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the current positions."""
        return copy.deepcopy(self._positions)

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(self._positions.items())

    def __contains__(self, partition) -> bool:
        return partition in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def __bool__(self) -> bool:
        return bool(self._positions)

    def __eq__(self, other) -> bool:
        if isinstance(other, Offset):
            return self._positions == other._positions
        if isinstance(other, dict):
            return self._positions == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"Offset({self._positions!r})"
