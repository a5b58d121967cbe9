"""
Pytest configuration and shared fixtures.

Builds change records and in-memory engine components so tests run
without MySQL, Kafka, PostgreSQL or MinIO.
"""

from typing import List, Optional

import pytest

from capture.codecs import create_codec
from capture.connectors.channels import MemoryChannel
from capture.connectors.readers import ReplayChangeReader
from capture.engine import CaptureEngine
from capture.errors import ChannelError, OffsetStoreError
from capture.flattening import RecordFlattener
from capture.policy import AlwaysCommitPolicy
from capture.records import ChangeRecord
from capture.stores import MemoryOffsetStore

PARTITION = "propwise"


def envelope(op: str, before: Optional[dict] = None, after: Optional[dict] = None, table: str = "leads") -> dict:
    """Change envelope as produced by the binlog reader."""
    return {
        "op": op,
        "before": before,
        "after": after,
        "source": {"connector": "mysql", "name": PARTITION, "db": "propwise", "table": table, "ts_ms": 1700000000000},
        "ts_ms": 1700000000123,
    }


def make_record(position, op: str = "c", row: Optional[dict] = None, partition: str = PARTITION) -> ChangeRecord:
    """Insert/update/delete record at an integer position."""
    row = row if row is not None else {"id": position, "name": f"lead-{position}"}
    if op == "d":
        value = envelope(op, before=row)
    elif op == "u":
        value = envelope(op, before=dict(row, name="old"), after=row)
    else:
        value = envelope(op, after=row)
    return ChangeRecord(
        key={"id": row.get("id")},
        value=value,
        partition=partition,
        position=position,
        topic=f"{partition}.propwise.leads",
    )


def make_tombstone(position, key_id, partition: str = PARTITION) -> ChangeRecord:
    return ChangeRecord(key={"id": key_id}, value=None, partition=partition, position=position)


class FlakyChannel(MemoryChannel):
    """Fails the first `failures` sends, or every send once `fail_after` messages were accepted."""

    def __init__(self, failures: int = 0, fail_after: Optional[int] = None):
        super().__init__()
        self.failures = failures
        self.fail_after = fail_after
        self.attempts = 0

    def send(self, message):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ChannelError("broker unavailable")
        if self.fail_after is not None and len(self) >= self.fail_after:
            raise ChannelError("broker unavailable")
        super().send(message)


class FlakyOffsetStore(MemoryOffsetStore):
    """Memory store whose next `failures` flushes raise OffsetStoreError."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.flushes = 0

    def flush(self):
        if self.failures > 0:
            self.failures -= 1
            raise OffsetStoreError("store unavailable")
        self.flushes += 1
        super().flush()


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def records() -> List[ChangeRecord]:
    """Three inserts at positions 1..3."""
    return [make_record(i) for i in range(1, 4)]


@pytest.fixture
def channel():
    return MemoryChannel()


@pytest.fixture
def offset_store():
    return MemoryOffsetStore()


@pytest.fixture
def codec():
    return create_codec("json")


@pytest.fixture
def make_engine(offset_store, channel, codec):
    """Factory for engines wired to in-memory components."""
    engines = []

    def _make(records, **kwargs):
        options = {
            "name": "test-capture",
            "reader": ReplayChangeReader(records, partitions=[PARTITION]),
            "offset_store": offset_store,
            "flattener": RecordFlattener(),
            "codec": codec,
            "channel": channel,
            "commit_policy": AlwaysCommitPolicy(),
            "poll_timeout": 0.01,
            "retry_backoff": 0,
            "shutdown_timeout": 5,
        }
        options.update(kwargs)
        engine = CaptureEngine(**options)
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.stop(timeout=5)
