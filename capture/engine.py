"""
Capture Engine
==============

Runs one capture task on a dedicated worker thread:

    reader -> flattener -> codec -> channel
                 |
                 +-> offset (advanced after delivery) -> commit policy -> offset store

Lifecycle: CREATED -> RUNNING -> STOPPING -> STOPPED. STOPPED is terminal;
a new engine is needed to run again.

Delivery is at-least-once. The in-memory offset only moves past a record
after the channel accepted it (or the flattener dropped it), and commits
write that offset to the store, so after a crash the records since the
last commit are read and delivered again.

Usage:
    engine = CaptureEngine(name, reader, store, flattener, codec, channel, policy)
    engine.start()
    ...
    engine.stop()
    result = engine.wait()
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from observability.logging.structured_logger import log_context

from .codecs import FormatCodec
from .connectors.channels import OutboundChannel
from .connectors.readers import END_OF_STREAM, ChangeStreamReader
from .errors import ChannelError, ConfigurationError, EncodingError, EngineStateError, OffsetStoreError
from .flattening import RecordFlattener
from .offsets import Offset
from .policy import CommitPolicy
from .records import DROPPED, ChangeRecord
from .stores import OffsetStore

logger = logging.getLogger(__name__)

# Engine states
CREATED = "created"
RUNNING = "running"
STOPPING = "stopping"
STOPPED = "stopped"

ON_ENCODING_ERROR_HALT = "halt"
ON_ENCODING_ERROR_SKIP = "skip"

CompletionCallback = Callable[[bool, str, Optional[BaseException]], None]


class CompletionResult:
    """Outcome of an engine run, as passed to the completion callback."""

    def __init__(self, success: bool, message: str, error: Optional[BaseException] = None):
        self.success = success
        self.message = message
        self.error = error

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        return f"CompletionResult(success={self.success}, message={self.message!r}, error={self.error!r})"


class CaptureEngine:
    """
    Change-capture engine.

    Args:
        name: Connector name, used in logs, metrics and the worker thread name
        reader: Change-stream reader
        offset_store: Durable checkpoint store
        flattener: Record transformation
        codec: Key/value/header encoding
        channel: Outbound channel
        commit_policy: Decides when the offset is committed
        completion_callback: Called once with (success, message, error) when the run ends
        shutdown_timeout: Seconds stop() waits for the worker to exit
        poll_timeout: Seconds the worker waits on the reader before re-checking state
        on_encoding_error: "halt" stops the engine, "skip" moves on to the next record
        publish_retries: Send attempts per message
        commit_retries: Commit attempts per commit
        retry_backoff: Exponential backoff multiplier in seconds (0 disables waiting)
        metrics: Optional CaptureMetrics
        clock: Monotonic time source
    """

    def __init__(
        self,
        name: str,
        reader: ChangeStreamReader,
        offset_store: OffsetStore,
        flattener: RecordFlattener,
        codec: FormatCodec,
        channel: OutboundChannel,
        commit_policy: CommitPolicy,
        completion_callback: Optional[CompletionCallback] = None,
        shutdown_timeout: float = 30.0,
        poll_timeout: float = 1.0,
        on_encoding_error: str = ON_ENCODING_ERROR_HALT,
        publish_retries: int = 3,
        commit_retries: int = 3,
        retry_backoff: float = 0.5,
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if on_encoding_error not in (ON_ENCODING_ERROR_HALT, ON_ENCODING_ERROR_SKIP):
            raise ConfigurationError(f"Unknown encoding error action: {on_encoding_error}")
        if publish_retries < 1 or commit_retries < 1:
            raise ConfigurationError("publish_retries and commit_retries must be at least 1")

        self.name = name
        self.reader = reader
        self.offset_store = offset_store
        self.flattener = flattener
        self.codec = codec
        self.channel = channel
        self.commit_policy = commit_policy
        self.completion_callback = completion_callback
        self.shutdown_timeout = shutdown_timeout
        self.poll_timeout = poll_timeout
        self.on_encoding_error = on_encoding_error
        self.publish_retries = publish_retries
        self.commit_retries = commit_retries
        self.retry_backoff = retry_backoff
        self.metrics = metrics
        self.clock = clock

        self._state = CREATED
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._result: Optional[CompletionResult] = None

        # Owned by the worker thread
        self._offset: Optional[Offset] = None
        self._events_since_commit = 0
        self._last_commit = 0.0

        # Shared with the host thread
        self._committed: Dict[str, Any] = {}
        self._counts = {"published": 0, "dropped": 0, "skipped": 0, "failed": 0}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def start(self):
        """Start the worker thread. Raises EngineStateError unless CREATED."""
        with self._lock:
            if self._state != CREATED:
                raise EngineStateError(f"Engine {self.name} cannot start from state {self._state}")
            self._state = RUNNING
            self._thread = threading.Thread(target=self._run, name=f"capture-{self.name}", daemon=True)
        logger.info(f"Starting capture engine {self.name}")
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """
        Ask the engine to stop and wait for the worker to exit.

        The record being processed is finished first, then the offset is
        committed. Safe to call from any thread, any number of times.

        Args:
            timeout: Seconds to wait (defaults to shutdown_timeout); 0 only
                requests the stop, for callers such as signal handlers
        """
        with self._lock:
            state = self._state
            if state == CREATED:
                self._state = STOPPED
            elif state == RUNNING:
                self._state = STOPPING

        if state == CREATED:
            logger.info(f"Capture engine {self.name} stopped before it was started")
            self._complete(CompletionResult(True, "Engine stopped before start"), set_state=False)
            return
        if state == STOPPED:
            return

        self._stop_requested.set()
        self.reader.stop()

        thread = self._thread
        wait = self.shutdown_timeout if timeout is None else timeout
        if thread is None or thread is threading.current_thread() or wait <= 0:
            return
        thread.join(wait)
        if thread.is_alive():
            logger.warning(f"Capture engine {self.name} did not stop within the shutdown timeout")

    def close(self, timeout: Optional[float] = None):
        """Stop the engine and release the outbound channel."""
        self.stop(timeout)
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.channel.close()

    def is_running(self) -> bool:
        """True until the worker has fully stopped."""
        with self._lock:
            return self._state in (RUNNING, STOPPING)

    def wait(self, timeout: Optional[float] = None) -> Optional[CompletionResult]:
        """Block until STOPPED and return the run outcome (None on timeout)."""
        if not self._done.wait(timeout):
            return None
        return self._result

    def committed_offsets(self) -> Dict[str, Any]:
        """Copy of the last offset durably written to the offset store."""
        with self._lock:
            return dict(self._committed)

    def stats(self) -> Dict[str, int]:
        """Record counts by outcome for this run."""
        with self._lock:
            return dict(self._counts)

    # =========================================================================
    # Worker
    # =========================================================================

    def _run(self):
        with log_context(connector=self.name):
            result = CompletionResult(True, "Engine completed")
            try:
                self._load_offsets()
                self.reader.open(self._offset)
                self._consume()
            except Exception as e:
                logger.error(f"Capture engine {self.name} failed: {e}")
                result = CompletionResult(False, f"Engine failed: {e}", e)

            with self._lock:
                if self._state == RUNNING:
                    self._state = STOPPING

            if self._offset is not None:
                try:
                    self._commit_offsets(force=True)
                except OffsetStoreError as e:
                    logger.error(f"Final offset commit failed for {self.name}: {e}")
                    if result.success:
                        result = CompletionResult(False, f"Final offset commit failed: {e}", e)

            self._release()
            self._complete(result)

    def _load_offsets(self):
        self.offset_store.start()
        positions = {}
        for partition in self.reader.partitions:
            position = self.offset_store.get(partition)
            if position is not None:
                positions[partition] = position
        self._offset = Offset(positions)
        with self._lock:
            self._committed = self._offset.snapshot()
        self._last_commit = self.clock()
        if positions:
            logger.info(f"Resuming {self.name} from offsets: {positions}")
        else:
            logger.info(f"No stored offsets for {self.name}, starting from the beginning of the stream")

    def _consume(self):
        while not self._stop_requested.is_set():
            record = self.reader.next(self.poll_timeout)
            if record is END_OF_STREAM:
                logger.info(f"Change stream for {self.name} ended")
                return
            if record is not None:
                self._process(record)
            self._commit_offsets()

    def _process(self, record: ChangeRecord):
        transformed = self.flattener.flatten(record)
        if transformed is DROPPED:
            logger.debug(f"Dropped record at {record.partition}:{record.position}")
            self._advance(record)
            self._count("dropped")
            return

        try:
            message = self.codec.encode(transformed)
        except EncodingError as e:
            logger.error(
                f"Failed to encode record at {record.partition}:{record.position}: {e}"
            )
            if self.on_encoding_error == ON_ENCODING_ERROR_SKIP:
                self._count("skipped")
                return
            self._count("failed")
            raise

        try:
            self._publish(message)
        except ChannelError:
            self._count("failed")
            raise
        self._advance(record)
        self._count("published")

    def _publish(self, message):
        retrying = Retrying(
            retry=retry_if_exception_type(ChannelError),
            stop=stop_after_attempt(self.publish_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, max=30),
            before_sleep=self._log_publish_retry,
            reraise=True,
        )
        retrying(self.channel.send, message)

    def _log_publish_retry(self, retry_state):
        logger.warning(
            f"Publish attempt {retry_state.attempt_number} failed: {retry_state.outcome.exception()}, retrying"
        )
        if self.metrics is not None:
            self.metrics.record_publish_retry()

    def _advance(self, record: ChangeRecord):
        self._offset.update(record.partition, record.position)
        self._events_since_commit += 1

    def _commit_offsets(self, force: bool = False) -> bool:
        """
        Commit changed partitions when the policy (or force) says so.

        Returns:
            False when the commit was attempted and failed
        """
        if not self._offset.has_changes:
            return True
        elapsed = self.clock() - self._last_commit
        if not force and not self.commit_policy.should_commit(self._events_since_commit, elapsed):
            return True

        retrying = Retrying(
            retry=retry_if_exception_type(OffsetStoreError),
            stop=stop_after_attempt(self.commit_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, max=30),
            reraise=True,
        )
        try:
            retrying(self._write_offsets)
        except OffsetStoreError as e:
            if self.metrics is not None:
                self.metrics.record_commit(success=False)
            if force:
                raise
            logger.error(f"Offset commit failed after {self.commit_retries} attempt(s), will retry: {e}")
            return False

        if self.metrics is not None:
            self.metrics.record_commit(success=True)
        return True

    def _write_offsets(self):
        changed = self._offset.changed()
        for partition, position in changed.items():
            self.offset_store.set(partition, position)
        self.offset_store.flush()

        self._offset.mark_flushed(changed.keys())
        with self._lock:
            self._committed = self._offset.snapshot()
        logger.debug(f"Committed {self._events_since_commit} record(s), offsets: {changed}")
        self._events_since_commit = 0
        self._last_commit = self.clock()

    def _count(self, outcome: str):
        with self._lock:
            self._counts[outcome] += 1
        if self.metrics is not None:
            self.metrics.record_outcome(outcome)

    def _release(self):
        for name, resource in (("reader", self.reader), ("offset store", self.offset_store)):
            try:
                resource.close()
            except Exception as e:
                logger.warning(f"Error closing {name} for {self.name}: {e}")

    def _complete(self, result: CompletionResult, set_state: bool = True):
        self._result = result
        if self.completion_callback is not None:
            try:
                self.completion_callback(result.success, result.message, result.error)
            except Exception:
                logger.exception(f"Completion callback for {self.name} raised")
        if set_state:
            with self._lock:
                self._state = STOPPED
        self._done.set()
        logger.info(f"Capture engine {self.name} stopped: {result.message}")

    def __repr__(self) -> str:
        return f"CaptureEngine(name={self.name!r}, state={self.state})"
