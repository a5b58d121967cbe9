"""Tests for change records, in-memory offsets and commit policies."""

import math

import pytest

from capture.errors import ConfigurationError
from capture.offsets import Offset
from capture.policy import AlwaysCommitPolicy, PeriodicCommitPolicy, create_commit_policy
from capture.records import DROPPED, ChangeRecord, FlattenedRecord

from .conftest import PARTITION, make_record, make_tombstone

# =============================================================================
# CHANGE RECORDS
# =============================================================================


def test_record_is_immutable():
    record = make_record(1)
    with pytest.raises(AttributeError):
        record.position = 2


def test_record_requires_partition():
    with pytest.raises(ValueError):
        ChangeRecord(key=None, value=None, partition="", position=1)


def test_record_operation_and_tombstone():
    assert make_record(1).operation == "c"
    assert make_record(2, op="d").is_delete
    tombstone = make_tombstone(3, key_id=1)
    assert tombstone.is_tombstone
    assert tombstone.operation is None


def test_headers_are_normalized_to_bytes():
    record = ChangeRecord(key=1, value=None, partition=PARTITION, position=1, headers=[("a", "x"), ("b", None)])
    assert record.headers == (("a", b"x"), ("b", b""))
    assert record.header("a") == b"x"
    assert record.header("missing") is None


def test_replace_keeps_record_type():
    flattened = FlattenedRecord.from_record(make_record(1), {"id": 1})
    moved = flattened.replace(position=9)
    assert isinstance(moved, FlattenedRecord)
    assert moved.position == 9
    assert moved.value == {"id": 1}


def test_dropped_is_falsy_singleton():
    assert not DROPPED
    assert type(DROPPED)() is DROPPED


# =============================================================================
# OFFSET
# =============================================================================


def test_offset_tracks_changed_partitions():
    offset = Offset({"a": 1})
    assert not offset.has_changes

    offset.update("b", 5)
    assert offset.changed() == {"b": 5}

    offset.mark_flushed(["b"])
    assert not offset.has_changes
    assert offset == {"a": 1, "b": 5}


def test_offset_snapshot_is_detached():
    offset = Offset({"a": {"file": "mysql-bin.000001", "pos": 4}})
    snapshot = offset.snapshot()
    snapshot["a"]["pos"] = 99
    assert offset.get("a")["pos"] == 4


def test_empty_offset_is_falsy():
    assert not Offset()
    assert len(Offset({"a": 1})) == 1


# =============================================================================
# COMMIT POLICY
# =============================================================================


def test_always_policy_commits_every_time():
    assert AlwaysCommitPolicy().should_commit(0, 0.0)


@pytest.mark.parametrize("interval, elapsed, expected", [
    (60, 59.9, False),
    (60, 60.0, True),
    (0, 0.0, True),
    (-1, 0.0, True),
    (math.inf, 1e12, False),
])
def test_periodic_policy_boundaries(interval, elapsed, expected):
    assert PeriodicCommitPolicy(interval).should_commit(10, elapsed) is expected


def test_policy_factory():
    assert isinstance(create_commit_policy("always"), AlwaysCommitPolicy)
    policy = create_commit_policy("PERIODIC", 15)
    assert isinstance(policy, PeriodicCommitPolicy)
    assert policy.interval == 15
    with pytest.raises(ConfigurationError):
        create_commit_policy("sometimes")
