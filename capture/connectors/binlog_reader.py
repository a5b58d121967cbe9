"""
MySQL Binlog Reader
===================

Change-stream reader on top of the MySQL binary log
(pymysqlreplication.BinLogStreamReader).

- One ChangeRecord per changed row (INSERT -> "c", UPDATE -> "u", DELETE -> "d")
- Optional tombstone record after each delete, for compacted topics
- Position token: {"file", "pos", "event", "row", "next_pos"}, plus
  "tombstone": True on tombstones. pos is the start of the table map
  events that open the statement, event counts the rows events after
  them and row indexes rows inside that event
- Heartbeat events wake the engine worker while the source is idle

Rows events can only be decoded after their table map, so a restart
always rewinds to the table map and skips what was already delivered.
"""

import base64
import datetime
import decimal
import logging
import math
import time
from collections import deque
from typing import Any, Dict, List, Optional

from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import HeartbeatLogEvent
from pymysqlreplication.row_event import DeleteRowsEvent, TableMapEvent, UpdateRowsEvent, WriteRowsEvent

from ..errors import ReaderError
from ..offsets import Offset
from ..records import OP_CREATE, OP_DELETE, OP_UPDATE, ChangeRecord
from .readers import END_OF_STREAM, ChangeStreamReader

logger = logging.getLogger(__name__)


def normalize_value(value: Any) -> Any:
    """Convert MySQL column values to JSON-friendly types."""
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        # BLOB, BINARY and VARBINARY columns
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, set):
        return sorted(normalize_value(v) for v in value)
    if isinstance(value, dict):
        return {
            (k.decode("utf-8") if isinstance(k, bytes) else str(k)): normalize_value(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


def normalize_row(row: Optional[Dict]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {str(column): normalize_value(value) for column, value in row.items()}


class BinlogChangeReader(ChangeStreamReader):
    """
    Reads row changes from the MySQL binlog.

    Args:
        server_name: Logical server name, used as the partition id and topic prefix
        connection: host, port, user, password
        tables: [{"schema": ..., "table": ..., "key_columns": ["id"]}]
        server_id: Replica server id, unique per reader
        tombstones_on_delete: Emit a null-value record after each delete
        heartbeat_interval: Seconds between heartbeat events (0 disables)
        stream_factory: BinLogStreamReader-compatible callable
    """

    def __init__(
        self,
        server_name: str,
        connection: Dict,
        tables: List[Dict],
        server_id: int = 100,
        tombstones_on_delete: bool = True,
        heartbeat_interval: float = 5.0,
        stream_factory=BinLogStreamReader,
    ):
        super().__init__()
        self.server_name = server_name
        self.partitions = [server_name]
        self.connection = connection
        self.server_id = server_id
        self.tombstones_on_delete = tombstones_on_delete
        self.heartbeat_interval = heartbeat_interval
        self.stream_factory = stream_factory
        self.tables = {
            f"{t['schema']}.{t['table']}": list(t.get("key_columns") or ["id"])
            for t in tables
        }
        self._stream = None
        self._pending = deque()
        self._skip = None
        # (file, pos) of the current table map group and rows events seen since
        self._anchor = None
        self._event_index = 0
        self._after_table_map = False

    def _resume_arguments(self, position: Optional[Dict]) -> Dict[str, Any]:
        if not position:
            return {}
        try:
            log_file = position["file"]
            log_pos = int(position["pos"])
            event = int(position.get("event", 0))
            row = int(position.get("row", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise ReaderError(f"Unusable binlog resume position: {position!r}") from e
        self._skip = {
            "anchor": (log_file, log_pos),
            "event": event,
            "row": row,
            "tombstone": bool(position.get("tombstone")),
        }
        return {"log_file": log_file, "log_pos": log_pos}

    def open(self, offset: Offset):
        resume = self._resume_arguments(offset.get(self.server_name))
        if resume:
            logger.info(f"Resuming binlog from checkpoint: {resume['log_file']}:{resume['log_pos']}")
        else:
            logger.info("No checkpoint found, reading binlog from the current position")

        only_events = [TableMapEvent, WriteRowsEvent, UpdateRowsEvent, DeleteRowsEvent]
        if self.heartbeat_interval:
            only_events.append(HeartbeatLogEvent)
        try:
            self._stream = self.stream_factory(
                connection_settings={
                    "host": self.connection["host"],
                    "port": int(self.connection["port"]),
                    "user": self.connection["user"],
                    "passwd": self.connection["password"],
                },
                server_id=self.server_id,
                only_events=only_events,
                only_tables=sorted({key.split(".", 1)[1] for key in self.tables}),
                only_schemas=sorted({key.split(".", 1)[0] for key in self.tables}),
                blocking=True,
                resume_stream=bool(resume),
                slave_heartbeat=self.heartbeat_interval or None,
                **resume,
            )
        except Exception as e:
            raise ReaderError(f"Failed to open binlog stream: {e}", {"server": self.server_name}) from e
        logger.info(f"Binlog stream connected, monitoring tables: {sorted(self.tables)}")

    def next(self, timeout: Optional[float] = None):
        """
        Return the next row change.

        The binlog stream blocks until an event arrives; heartbeat and
        table map events return None so the caller can check for a stop
        request.
        """
        if self.stopping:
            return END_OF_STREAM
        if self._pending:
            return self._pending.popleft()
        if self._stream is None:
            raise ReaderError("Binlog reader is not open", {"server": self.server_name})

        try:
            event = self._stream.fetchone()
        except Exception as e:
            if self.stopping:
                return END_OF_STREAM
            raise ReaderError(f"Binlog stream error: {e}", {"server": self.server_name}) from e

        if event is None:
            return END_OF_STREAM
        if isinstance(event, HeartbeatLogEvent):
            return None
        if isinstance(event, TableMapEvent):
            if not self._after_table_map:
                self._anchor = (self._stream.log_file, self._start_of(event))
                self._event_index = 0
            self._after_table_map = True
            return None

        self._after_table_map = False
        if self._anchor is None:
            self._anchor = (self._stream.log_file, self._start_of(event))
        event_index = self._event_index
        self._event_index += 1

        self._pending.extend(self._records_for(event, event_index))
        return self._pending.popleft() if self._pending else None

    @staticmethod
    def _start_of(event) -> int:
        return event.packet.log_pos - event.event_size

    def _resume_point(self, event_index: int):
        """
        Return (last delivered row, its tombstone delivered) for this event
        while replaying after a restart, or None once past the checkpoint.
        """
        skip = self._skip
        if skip is None:
            return None
        if skip["anchor"] != self._anchor or event_index > skip["event"]:
            self._skip = None
            return None
        if event_index < skip["event"]:
            return math.inf, True
        self._skip = None
        return skip["row"], skip["tombstone"]

    def _records_for(self, event, event_index: int) -> List[ChangeRecord]:
        resume_point = self._resume_point(event_index)
        table_key = f"{event.schema}.{event.table}"
        if table_key not in self.tables:
            return []

        if isinstance(event, WriteRowsEvent):
            changes = [(OP_CREATE, None, row["values"]) for row in event.rows]
        elif isinstance(event, UpdateRowsEvent):
            changes = [(OP_UPDATE, row["before_values"], row["after_values"]) for row in event.rows]
        elif isinstance(event, DeleteRowsEvent):
            changes = [(OP_DELETE, row["values"], None) for row in event.rows]
        else:
            return []

        log_file, anchor_pos = self._anchor
        next_pos = event.packet.log_pos
        start_pos = self._start_of(event)
        last_row, tombstone_sent = resume_point if resume_point is not None else (-1, True)

        records = []
        key_columns = self.tables[table_key]
        topic = f"{self.server_name}.{table_key}"
        for index, (op, before, after) in enumerate(changes):
            if index < last_row:
                continue
            before = normalize_row(before)
            after = normalize_row(after)
            row = after if after is not None else before
            key = {column: row[column] for column in key_columns if column in row} or None
            position = {
                "file": log_file,
                "pos": anchor_pos,
                "event": event_index,
                "row": index,
                "next_pos": next_pos,
            }
            tombstone = None
            if op == OP_DELETE and self.tombstones_on_delete:
                tombstone = ChangeRecord(key, None, self.server_name, dict(position, tombstone=True), topic=topic)

            if index == last_row:
                # the change itself was delivered, its tombstone may not have been
                if tombstone is not None and not tombstone_sent:
                    records.append(tombstone)
                continue

            envelope = {
                "op": op,
                "before": before,
                "after": after,
                "source": {
                    "connector": "mysql",
                    "name": self.server_name,
                    "server_id": self.server_id,
                    "ts_ms": int(event.timestamp) * 1000,
                    "db": event.schema,
                    "table": event.table,
                    "file": log_file,
                    "pos": start_pos,
                    "row": index,
                },
                "ts_ms": int(time.time() * 1000),
            }
            records.append(ChangeRecord(key, envelope, self.server_name, position, topic=topic))
            if tombstone is not None:
                records.append(tombstone)

        if records:
            logger.debug(f"Captured {len(records)} record(s) for {table_key} at {log_file}:{start_pos}")
        return records

    def stop(self):
        super().stop()
        stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing binlog stream: {e}")

    def close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None
