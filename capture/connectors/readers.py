"""
Change-Stream Readers
=====================

A change-stream reader emits ChangeRecords one at a time, in source
order, to the engine worker:

    reader.open(offset)          # resume point, partition -> position
    reader.next(timeout)         # ChangeRecord, None (nothing yet) or END_OF_STREAM
    reader.stop()                # from any thread, ends the stream gracefully
    reader.close()

next() raises ReaderError when the source fails and cannot resume.
"""

import logging
import threading
from collections import deque
from typing import Dict, Iterable, List, Optional

from ..offsets import Offset
from ..records import ChangeRecord

logger = logging.getLogger(__name__)


class _EndOfStream:
    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


class ChangeStreamReader:
    """Base reader. Subclasses set `partitions` and implement next()."""

    partitions: List[str] = []

    def __init__(self):
        self._stopping = threading.Event()

    def open(self, offset: Offset):
        """Prepare to read, resuming after the given offset."""

    def next(self, timeout: Optional[float] = None):
        raise NotImplementedError

    def stop(self):
        """Ask the reader to stop producing records. Thread-safe."""
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def close(self):
        """Release reader resources."""


class ReplayChangeReader(ChangeStreamReader):
    """
    Replays an in-memory sequence of records.

    Records at or before the resume position of their partition are
    skipped on open(). When `follow` is True the reader does not end after
    the last record; it waits for stop() like a live source would.

    Args:
        records: Records in source order
        partitions: Partition ids to resume (defaults to those in records)
        follow: Keep the stream open after the last record
    """

    def __init__(
        self,
        records: Iterable[ChangeRecord],
        partitions: Optional[List[str]] = None,
        follow: bool = False,
    ):
        super().__init__()
        self._records = list(records)
        if partitions is None:
            partitions = []
            for record in self._records:
                if record.partition not in partitions:
                    partitions.append(record.partition)
        self.partitions = list(partitions)
        self.follow = follow
        self._queue = deque()
        self.resumed_from: Dict[str, object] = {}

    def open(self, offset: Offset):
        resume = {p: offset.get(p) for p in self.partitions if offset.get(p) is not None}
        self.resumed_from = dict(resume)
        skip_until = {}
        # records sharing the resume position after the first one (a delete
        # and its tombstone) are replayed
        for index, record in enumerate(self._records):
            if record.partition in resume and record.position == resume[record.partition]:
                skip_until.setdefault(record.partition, index)
        for index, record in enumerate(self._records):
            if record.partition in resume and self._delivered(record, index, resume, skip_until):
                continue
            self._queue.append(record)
        if resume:
            logger.info(f"Replay resuming from {resume}, {len(self._queue)} record(s) pending")

    @staticmethod
    def _delivered(record, index, resume, skip_until) -> bool:
        if record.partition in skip_until:
            return index <= skip_until[record.partition]
        try:
            return record.position <= resume[record.partition]
        except TypeError:
            return False

    def next(self, timeout: Optional[float] = None):
        if self.stopping:
            return END_OF_STREAM
        if self._queue:
            return self._queue.popleft()
        if self.follow:
            self._stopping.wait(timeout)
            return END_OF_STREAM if self.stopping else None
        return END_OF_STREAM
