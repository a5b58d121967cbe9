"""Tests for the capture engine: delivery, offsets, commit policy and lifecycle."""

import logging
import math
import time
from unittest.mock import MagicMock

import pytest

from capture.connectors.binlog_reader import normalize_row
from capture.connectors.channels import MemoryChannel
from capture.connectors.readers import ChangeStreamReader, ReplayChangeReader
from capture.engine import STOPPED, CaptureEngine, CompletionResult
from capture.errors import ChannelError, ConfigurationError, EncodingError, EngineStateError, ReaderError
from capture.flattening import RecordFlattener
from capture.policy import PeriodicCommitPolicy
from capture.stores import MemoryOffsetStore
from observability.metrics.collector import CaptureMetrics

from .conftest import PARTITION, FlakyChannel, FlakyOffsetStore, make_record, make_tombstone


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def values(channel, codec):
    return [codec.decode_value(message.value) for message in channel.messages]


class FailingReader(ChangeStreamReader):
    """Delivers the given records, then reports an unrecoverable error."""

    def __init__(self, records):
        super().__init__()
        self.partitions = [PARTITION]
        self._records = list(records)
        self.closed = False

    def next(self, timeout=None):
        if self._records:
            return self._records.pop(0)
        raise ReaderError("binlog connection lost", {"server": PARTITION})

    def close(self):
        self.closed = True


# =============================================================================
# DELIVERY
# =============================================================================


def test_inserts_are_flattened_and_published(make_engine, records, channel, codec, offset_store):
    """Each insert reaches the channel as its flat after-row."""
    engine = make_engine(records)
    engine.start()
    result = engine.wait(5)

    assert result.success
    assert values(channel, codec) == [
        {"id": 1, "name": "lead-1"},
        {"id": 2, "name": "lead-2"},
        {"id": 3, "name": "lead-3"},
    ]
    assert codec.decode_key(channel.messages[0].key) == {"id": 1}
    assert channel.messages[0].attributes["content_type"] == "application/json"
    assert engine.committed_offsets() == {PARTITION: 3}
    assert offset_store.get(PARTITION) == 3


def test_delete_rewrite_publishes_before_state_with_marker(make_engine, channel, codec):
    """Rewritten deletes carry the before row plus deleted=True."""
    record = make_record(4, op="d", row={"id": 7, "name": "gone"})
    engine = make_engine([record], flattener=RecordFlattener(delete_handling_mode="rewrite"))
    engine.start()
    assert engine.wait(5).success

    assert values(channel, codec) == [{"id": 7, "name": "gone", "deleted": True}]


def test_dropped_delete_still_advances_offset(make_engine, channel):
    """A delete dropped by the flattener is not published but is checkpointed."""
    engine = make_engine([make_record(1), make_record(2, op="d")])
    engine.start()
    assert engine.wait(5).success

    assert len(channel) == 1
    assert engine.committed_offsets() == {PARTITION: 2}
    assert engine.stats()["dropped"] == 1
    assert engine.stats()["published"] == 1


def test_tombstone_passes_when_only_deletes_are_dropped(make_engine, channel):
    """drop mode with drop_tombstones=False drops the delete but keeps its tombstone."""
    flattener = RecordFlattener(delete_handling_mode="drop", drop_tombstones=False)
    engine = make_engine([make_record(1, op="d"), make_tombstone(2, key_id=1)], flattener=flattener)
    engine.start()
    assert engine.wait(5).success

    assert len(channel) == 1
    message = channel.messages[0]
    assert message.value == b""
    assert message.attributes["content_type"] == "text/plain"
    assert engine.committed_offsets() == {PARTITION: 2}


def test_restart_resumes_after_committed_position(make_engine, channel, codec, offset_store):
    """With offset 5 stored, the first delivered record is the one at position 6."""
    offset_store.set(PARTITION, 5)
    offset_store.flush()
    engine = make_engine([make_record(i) for i in range(1, 9)])
    engine.start()
    assert engine.wait(5).success

    delivered = values(channel, codec)
    assert delivered[0] == {"id": 6, "name": "lead-6"}
    assert len(delivered) == 3
    assert engine.committed_offsets() == {PARTITION: 8}


def test_binary_columns_are_published_as_base64(make_engine, channel, codec):
    """BLOB and VARBINARY values from the binlog encode with the default settings."""
    row = normalize_row({"id": 1, "photo": b"\x89PNG"})
    engine = make_engine([make_record(1, row=row)])
    engine.start()
    assert engine.wait(5).success

    assert values(channel, codec) == [{"id": 1, "photo": "iVBORw=="}]


def test_drops_are_not_redelivered_after_restart(make_engine, offset_store):
    """Dropped records count as processed, so a restart does not revisit them."""
    stream = [make_record(1), make_record(2, op="d"), make_record(3)]
    first = make_engine(stream[:2])
    first.start()
    assert first.wait(5).success
    assert offset_store.get(PARTITION) == 2

    second_channel = MemoryChannel()
    second = make_engine(stream, channel=second_channel)
    second.start()
    assert second.wait(5).success
    assert [m.attributes["cdc_topic"] for m in second_channel.messages] == ["propwise.propwise.leads"]
    assert second.stats() == {"published": 1, "dropped": 0, "skipped": 0, "failed": 0}


# =============================================================================
# AT-LEAST-ONCE / FAILURES
# =============================================================================


def test_publish_failure_never_advances_offset(make_engine, codec, offset_store):
    """Records not accepted by the channel stay uncommitted and are redelivered."""
    flaky = FlakyChannel(fail_after=2)
    engine = make_engine([make_record(i) for i in range(1, 5)], channel=flaky, publish_retries=2)
    engine.start()
    result = engine.wait(5)

    assert not result.success
    assert isinstance(result.error, ChannelError)
    assert len(flaky) == 2
    assert engine.committed_offsets() == {PARTITION: 2}
    assert offset_store.get(PARTITION) == 2

    retry_channel = MemoryChannel()
    restarted = make_engine([make_record(i) for i in range(1, 5)], channel=retry_channel)
    restarted.start()
    assert restarted.wait(5).success
    assert [v["id"] for v in values(retry_channel, codec)] == [3, 4]


def test_tombstone_failing_after_its_delete_is_redelivered(make_engine, offset_store):
    """A delete and its tombstone share a position; a restart after the delete resends the tombstone."""
    flattener = RecordFlattener(delete_handling_mode="none", drop_tombstones=False)
    stream = [make_record(1, op="d"), make_tombstone(1, key_id=1)]
    first = make_engine(stream, channel=FlakyChannel(fail_after=1), flattener=flattener, publish_retries=1)
    first.start()
    assert not first.wait(5).success
    assert offset_store.get(PARTITION) == 1

    retry_channel = MemoryChannel()
    second = make_engine(stream, channel=retry_channel, flattener=flattener)
    second.start()
    assert second.wait(5).success
    assert len(retry_channel) == 1
    assert retry_channel.messages[0].value == b""


def test_transient_publish_failures_are_retried(make_engine, records):
    flaky = FlakyChannel(failures=2)
    metrics = CaptureMetrics("test-capture")
    engine = make_engine(records, channel=flaky, publish_retries=3, metrics=metrics)
    engine.start()

    assert engine.wait(5).success
    assert len(flaky) == 3
    assert flaky.attempts == 5
    assert metrics.value("capture_publish_retries_total") == 2
    assert metrics.value("capture_records_total", outcome="published") == 3


def test_encoding_failure_is_skipped_when_configured(make_engine, channel):
    """on_encoding_error=skip moves on; later records still advance the offset."""
    bad = make_record(2, row={"id": 2, "blob": object()})
    engine = make_engine([make_record(1), bad, make_record(3)], on_encoding_error="skip")
    engine.start()
    assert engine.wait(5).success

    assert len(channel) == 2
    assert engine.stats()["skipped"] == 1
    assert engine.committed_offsets() == {PARTITION: 3}


def test_encoding_failure_halts_by_default(make_engine, channel):
    bad = make_record(2, row={"id": 2, "blob": object()})
    engine = make_engine([make_record(1), bad, make_record(3)])
    engine.start()
    result = engine.wait(5)

    assert not result.success
    assert isinstance(result.error, EncodingError)
    assert result.error.details["position"] == 2
    assert len(channel) == 1
    assert engine.committed_offsets() == {PARTITION: 1}


def test_reader_failure_completes_with_error(make_engine):
    """An unrecoverable reader error stops the engine and reports failure once."""
    callback = MagicMock()
    reader = FailingReader([make_record(1)])
    engine = make_engine([], reader=reader, completion_callback=callback)
    engine.start()
    result = engine.wait(5)

    assert not result.success
    assert isinstance(result.error, ReaderError)
    callback.assert_called_once_with(False, result.message, result.error)
    assert engine.committed_offsets() == {PARTITION: 1}
    assert reader.closed
    assert engine.state == STOPPED


# =============================================================================
# COMMIT POLICY
# =============================================================================


def test_periodic_zero_commits_like_always(make_engine, records):
    """PeriodicCommitPolicy(0) flushes after every record, like AlwaysCommitPolicy."""
    always_store = FlakyOffsetStore()
    always = make_engine(records, offset_store=always_store)
    always.start()
    assert always.wait(5).success

    periodic_store = FlakyOffsetStore()
    periodic = make_engine(
        records, offset_store=periodic_store, channel=MemoryChannel(), commit_policy=PeriodicCommitPolicy(0)
    )
    periodic.start()
    assert periodic.wait(5).success

    assert always_store.flushes == periodic_store.flushes == 3


def test_periodic_infinite_commits_only_on_shutdown(make_engine, records, channel):
    store = FlakyOffsetStore()
    reader = ReplayChangeReader(records, partitions=[PARTITION], follow=True)
    engine = make_engine(records, reader=reader, offset_store=store, commit_policy=PeriodicCommitPolicy(math.inf))
    engine.start()

    assert wait_for(lambda: len(channel) == 3)
    assert engine.is_running()
    assert engine.committed_offsets() == {}
    assert store.get(PARTITION) is None

    engine.stop()
    assert engine.wait(5).success
    assert store.flushes == 1
    assert engine.committed_offsets() == {PARTITION: 3}


def test_failed_commit_is_retried(make_engine, records):
    store = FlakyOffsetStore(failures=2)
    engine = make_engine(records, offset_store=store, commit_retries=3)
    engine.start()

    assert engine.wait(5).success
    assert engine.committed_offsets() == {PARTITION: 3}


def test_exhausted_commit_keeps_offset_for_next_attempt(make_engine, records):
    """A commit that runs out of retries is re-attempted after the next record."""
    store = FlakyOffsetStore(failures=2)
    metrics = CaptureMetrics("test-capture")
    engine = make_engine(records, offset_store=store, commit_retries=1, metrics=metrics)
    engine.start()

    assert engine.wait(5).success
    assert store.flushes == 1
    assert metrics.value("capture_commits_total", status="failed") == 2
    assert metrics.value("capture_commits_total", status="success") == 1
    assert engine.committed_offsets() == {PARTITION: 3}


def test_failed_final_commit_fails_the_run(make_engine, records):
    store = FlakyOffsetStore(failures=10)
    engine = make_engine(records, offset_store=store, commit_policy=PeriodicCommitPolicy(math.inf), commit_retries=2)
    engine.start()
    result = engine.wait(5)

    assert not result.success
    assert "Final offset commit failed" in result.message
    assert engine.committed_offsets() == {}


# =============================================================================
# LIFECYCLE
# =============================================================================


def test_start_twice_raises(make_engine, records):
    engine = make_engine(records)
    engine.start()
    with pytest.raises(EngineStateError):
        engine.start()
    engine.wait(5)


def test_stopped_engine_cannot_restart(make_engine, records):
    engine = make_engine(records)
    engine.start()
    engine.wait(5)

    assert engine.state == STOPPED
    assert not engine.is_running()
    with pytest.raises(EngineStateError):
        engine.start()


def test_stop_before_start_completes_once(make_engine, records):
    callback = MagicMock()
    engine = make_engine(records, completion_callback=callback)
    engine.stop()
    engine.stop()

    assert engine.state == STOPPED
    assert isinstance(engine.wait(1), CompletionResult)
    callback.assert_called_once()
    with pytest.raises(EngineStateError):
        engine.start()


def test_stop_is_graceful_and_idempotent(make_engine, records, channel):
    callback = MagicMock()
    reader = ReplayChangeReader(records, partitions=[PARTITION], follow=True)
    engine = make_engine(records, reader=reader, completion_callback=callback)
    engine.start()
    assert wait_for(lambda: len(channel) == 3)

    engine.stop()
    engine.stop()

    assert not engine.is_running()
    callback.assert_called_once_with(True, "Engine completed", None)
    assert engine.wait(0).success


def test_stop_without_waiting_does_not_warn(make_engine, records, channel, caplog):
    """timeout=0 only requests the stop, as the CLI signal handler does."""
    reader = ReplayChangeReader(records, partitions=[PARTITION], follow=True)
    engine = make_engine(records, reader=reader)
    engine.start()
    assert wait_for(lambda: len(channel) == 3)

    with caplog.at_level(logging.WARNING, logger="capture.engine"):
        engine.stop(timeout=0)
        assert engine.wait(5).success
    assert "did not stop" not in caplog.text


def test_close_releases_channel(make_engine, records):
    channel = MagicMock()
    engine = make_engine(records, channel=channel)
    engine.start()
    engine.wait(5)

    engine.close()
    engine.close()
    channel.close.assert_called_once()


def test_invalid_encoding_error_action_rejected(records):
    with pytest.raises(ConfigurationError):
        CaptureEngine(
            "bad", ReplayChangeReader(records), MemoryOffsetStore(), RecordFlattener(),
            MagicMock(), MemoryChannel(), PeriodicCommitPolicy(1), on_encoding_error="ignore",
        )
