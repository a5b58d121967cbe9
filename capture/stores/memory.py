"""
In-memory offset store. Nothing survives a process exit.
"""

from .base import OffsetStore


class MemoryOffsetStore(OffsetStore):
    """Offsets kept in a dict for the lifetime of the process."""

    name = "memory"
