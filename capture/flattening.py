"""
Record Flattening
=================

Turns a change envelope into a flat row, the way downstream consumers
usually want it:

- insert / update / snapshot -> the "after" state only
- delete -> dropped, rewritten (before state + deleted marker) or passed
  through untouched, depending on the delete handling mode
- tombstones -> dropped or passed through

Selected metadata (operation, table, database...) can be appended as
"__"-prefixed value fields and/or headers.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ConfigurationError
from .records import DROPPED, ChangeRecord, FlattenedRecord, _Dropped

logger = logging.getLogger(__name__)

DELETE_DROP = "drop"
DELETE_REWRITE = "rewrite"
DELETE_NONE = "none"
DELETE_HANDLING_MODES = (DELETE_DROP, DELETE_REWRITE, DELETE_NONE)

# Envelope-level fields; any other bare name is looked up in "source"
ENVELOPE_FIELDS = ("op", "ts_ms")


def parse_field_list(fields_text: Optional[str]) -> List[Tuple[Optional[str], str]]:
    """
    Parse a comma-delimited metadata field list.

    "op,table,source.ts_ms" -> [(None, "op"), (None, "table"), ("source", "ts_ms")]
    """
    if not fields_text:
        return []
    fields = []
    for item in fields_text.split(","):
        item = item.strip()
        if not item:
            continue
        if "." in item:
            struct, _, name = item.partition(".")
            if not struct or not name:
                raise ConfigurationError(f"Invalid metadata field: {item}", {"fields": fields_text})
            fields.append((struct, name))
        else:
            fields.append((None, item))
    return fields


def _field_name(struct: Optional[str], name: str) -> str:
    return f"__{struct}_{name}" if struct else f"__{name}"


def _header_value(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, default=str).encode("utf-8")


class RecordFlattener:
    """
    Stateless change-record transformer.

    Args:
        enabled: When False every record passes through unchanged
        delete_handling_mode: "drop", "rewrite" or "none"
        drop_tombstones: Suppress tombstone (null value) records
        add_fields: Comma-delimited metadata fields to add to the value
        add_headers: Comma-delimited metadata fields to add as headers
        deleted_field: Marker field added to rewritten deletes
    """

    def __init__(
        self,
        enabled: bool = True,
        delete_handling_mode: str = DELETE_DROP,
        drop_tombstones: bool = True,
        add_fields: Optional[str] = None,
        add_headers: Optional[str] = None,
        deleted_field: str = "deleted",
    ):
        mode = (delete_handling_mode or "").lower()
        if mode not in DELETE_HANDLING_MODES:
            raise ConfigurationError(
                f"Unknown delete handling mode: {delete_handling_mode}",
                {"allowed": ",".join(DELETE_HANDLING_MODES)},
            )
        if mode == DELETE_REWRITE and not deleted_field:
            raise ConfigurationError("Delete handling mode 'rewrite' requires a deleted marker field")

        self.enabled = enabled
        self.delete_handling_mode = mode
        self.drop_tombstones = drop_tombstones
        self.deleted_field = deleted_field
        self.fields = parse_field_list(add_fields)
        self.header_fields = parse_field_list(add_headers)

    def flatten(self, record: ChangeRecord) -> Union[ChangeRecord, _Dropped]:
        """
        Flatten a single record.

        Returns:
            FlattenedRecord, the unchanged record when flattening is
            disabled, or DROPPED when the record is suppressed
        """
        if not self.enabled:
            return record

        if record.is_tombstone:
            if self.drop_tombstones:
                logger.debug(f"Dropped tombstone for key {record.key!r} at {record.position!r}")
                return DROPPED
            return record

        envelope = record.value
        if not isinstance(envelope, dict):
            return record
        headers = record.headers + self._metadata_headers(envelope)

        if record.is_delete:
            if self.delete_handling_mode == DELETE_DROP:
                logger.debug(f"Dropped delete for key {record.key!r} at {record.position!r}")
                return DROPPED
            if self.delete_handling_mode == DELETE_NONE:
                return FlattenedRecord.from_record(record, envelope, headers)
            row = dict(envelope.get("before") or {})
            row[self.deleted_field] = True
            return FlattenedRecord.from_record(record, self._add_fields(row, envelope), headers)

        row = envelope.get("after")
        if isinstance(row, dict):
            row = self._add_fields(dict(row), envelope)
        return FlattenedRecord.from_record(record, row, headers)

    def _lookup(self, envelope: Dict[str, Any], struct: Optional[str], name: str) -> Any:
        if struct:
            container = envelope.get(struct)
            return container.get(name) if isinstance(container, dict) else None
        if name in ENVELOPE_FIELDS:
            return envelope.get(name)
        source = envelope.get("source")
        return source.get(name) if isinstance(source, dict) else None

    def _add_fields(self, row: Dict[str, Any], envelope: Dict[str, Any]) -> Dict[str, Any]:
        for struct, name in self.fields:
            row[_field_name(struct, name)] = self._lookup(envelope, struct, name)
        return row

    def _metadata_headers(self, envelope: Dict[str, Any]) -> Tuple[Tuple[str, bytes], ...]:
        return tuple(
            (_field_name(struct, name), _header_value(self._lookup(envelope, struct, name)))
            for struct, name in self.header_fields
        )
