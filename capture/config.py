"""
Capture Settings
================

Loads the capture task settings (task_settings.json) and validates them
before anything is built, so a bad configuration is rejected up front
instead of failing mid-stream.

Layout:
    {
        "name": "propwise-capture",
        "source": {...},      # change-stream reader
        "offset": {...},      # offset storage and commit policy
        "flattening": {...},  # delete handling, tombstones, metadata fields
        "format": {...},      # key / value / header formats
        "stream": {...},      # outbound message options
        "engine": {...},      # shutdown, retries, encoding errors
        "channel": {...},     # outbound channel
        "logging": {...}
    }
"""

import json
import os
from typing import Any, Dict, List, Optional

from .codecs import SERIALIZERS
from .errors import ConfigurationError
from .flattening import DELETE_HANDLING_MODES, parse_field_list
from .policy import POLICY_ALWAYS, POLICY_PERIODIC

STORAGE_TYPES = ("memory", "file", "kafka", "metadata")
METADATA_BACKENDS = ("memory", "postgres", "minio")
SOURCE_CONNECTORS = ("mysql", "replay")
CHANNEL_TYPES = ("memory", "kafka")
ENCODING_ERROR_ACTIONS = ("halt", "skip")


def _section(data: Dict, key: str) -> Dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Settings section '{key}' must be an object")
    return value


def _number(value: Any, name: str, minimum: Optional[float] = None) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Setting '{name}' must be a number", {"value": value})
    if minimum is not None and number < minimum:
        raise ConfigurationError(f"Setting '{name}' must be >= {minimum}", {"value": value})
    return number


def _choice(value: Any, name: str, allowed) -> str:
    choice = str(value or "").lower()
    if choice not in allowed:
        raise ConfigurationError(
            f"Invalid value for '{name}': {value}", {"allowed": ",".join(allowed)}
        )
    return choice


class SourceSettings:
    """Change-stream reader settings."""

    def __init__(self, data: Dict):
        self.connector = _choice(data.get("connector", "mysql"), "source.connector", SOURCE_CONNECTORS)
        self.server_name = data.get("server_name")
        self.connection: Dict = dict(data.get("connection") or {})
        self.server_id = int(data.get("server_id", 100))
        self.tables: List[Dict] = list(data.get("tables") or [])
        self.tombstones_on_delete = bool(data.get("tombstones_on_delete", True))
        self.heartbeat_interval = _number(data.get("heartbeat_interval", 5), "source.heartbeat_interval", 0)
        self.records: List[Dict] = list(data.get("records") or [])

        if self.connector == "mysql":
            if not self.server_name:
                raise ConfigurationError("source.server_name is required for the mysql connector")
            for field in ("host", "port", "user", "password"):
                if field not in self.connection:
                    raise ConfigurationError(f"source.connection.{field} is required for the mysql connector")
            if not self.tables:
                raise ConfigurationError("source.tables must list at least one table")
            for table in self.tables:
                if not table.get("schema") or not table.get("table"):
                    raise ConfigurationError("Each source table needs 'schema' and 'table'", {"table": table})


class OffsetSettings:
    """Offset storage and commit policy."""

    def __init__(self, data: Dict):
        self.storage = _choice(data.get("storage", "metadata"), "offset.storage", STORAGE_TYPES)
        self.policy = _choice(data.get("policy", POLICY_PERIODIC), "offset.policy", (POLICY_PERIODIC, POLICY_ALWAYS))
        self.flush_interval = _number(data.get("flush_interval", 60), "offset.flush_interval")
        self.commit_timeout = _number(data.get("commit_timeout", 5), "offset.commit_timeout", 0)
        self.file = _section(data, "file")
        self.kafka = _section(data, "kafka")
        self.metadata = _section(data, "metadata")

        if self.storage == "file" and not self.file.get("path"):
            raise ConfigurationError("offset.file.path is required for file offset storage")
        if self.storage == "kafka":
            for field in ("bootstrap_servers", "topic"):
                if not self.kafka.get(field):
                    raise ConfigurationError(f"offset.kafka.{field} is required for kafka offset storage")
        if self.storage == "metadata":
            self.metadata_backend = _choice(
                self.metadata.get("backend", "memory"), "offset.metadata.backend", METADATA_BACKENDS
            )
            if self.metadata_backend in ("postgres", "minio") and not self.metadata.get("connection"):
                raise ConfigurationError(
                    f"offset.metadata.connection is required for the {self.metadata_backend} metadata store"
                )
        else:
            self.metadata_backend = None


class FlatteningSettings:
    """Event flattening options."""

    def __init__(self, data: Dict):
        self.enabled = bool(data.get("enabled", True))
        self.drop_tombstones = bool(data.get("drop_tombstones", True))
        self.delete_handling_mode = _choice(
            data.get("delete_handling_mode", "drop"), "flattening.delete_handling_mode", DELETE_HANDLING_MODES
        )
        self.deleted_field = data.get("deleted_field", "deleted")
        self.add_fields = data.get("add_fields")
        self.add_headers = data.get("add_headers")

        parse_field_list(self.add_fields)
        parse_field_list(self.add_headers)
        if not self.enabled and (self.add_fields or self.add_headers):
            raise ConfigurationError("flattening.add_fields/add_headers require flattening to be enabled")
        if self.delete_handling_mode == "rewrite" and not self.deleted_field:
            raise ConfigurationError("flattening.deleted_field is required for delete handling mode 'rewrite'")


class FormatSettings:
    """Wire formats for key, value and headers."""

    def __init__(self, data: Dict):
        formats = tuple(SERIALIZERS)
        self.payload = _choice(data.get("payload", "json"), "format.payload", formats)
        self.key = _choice(data["key"], "format.key", formats) if data.get("key") else None
        self.value = _choice(data["value"], "format.value", formats) if data.get("value") else None
        self.header = _choice(data["header"], "format.header", formats) if data.get("header") else None


class StreamSettings:
    """Outbound message options."""

    def __init__(self, data: Dict):
        self.copy_headers = bool(data.get("copy_headers", True))
        self.header_offset = bool(data.get("header_offset", False))


class EngineSettings:
    """Engine lifecycle and retry options."""

    def __init__(self, data: Dict):
        self.shutdown_timeout = _number(data.get("shutdown_timeout", 30), "engine.shutdown_timeout", 0)
        self.poll_timeout = _number(data.get("poll_timeout", 1.0), "engine.poll_timeout", 0)
        self.on_encoding_error = _choice(
            data.get("on_encoding_error", "halt"), "engine.on_encoding_error", ENCODING_ERROR_ACTIONS
        )
        self.publish_retries = int(_number(data.get("publish_retries", 3), "engine.publish_retries", 1))
        self.commit_retries = int(_number(data.get("commit_retries", 3), "engine.commit_retries", 1))
        self.retry_backoff = _number(data.get("retry_backoff", 0.5), "engine.retry_backoff", 0)


class ChannelSettings:
    """Outbound channel selection."""

    def __init__(self, data: Dict):
        self.type = _choice(data.get("type", "memory"), "channel.type", CHANNEL_TYPES)
        self.kafka = _section(data, "kafka")
        if self.type == "kafka" and not self.kafka.get("bootstrap_servers"):
            raise ConfigurationError("channel.kafka.bootstrap_servers is required for the kafka channel")


class CaptureSettings:
    """
    Complete, validated capture task settings.

    Raises:
        ConfigurationError: On missing, unknown or conflicting settings
    """

    def __init__(self, data: Dict):
        if not isinstance(data, dict):
            raise ConfigurationError("Settings must be a JSON object")
        self.name = data.get("name")
        if not self.name:
            raise ConfigurationError("Setting 'name' (connector identity) is required")
        self.source = SourceSettings(_section(data, "source"))
        self.offset = OffsetSettings(_section(data, "offset"))
        self.flattening = FlatteningSettings(_section(data, "flattening"))
        self.format = FormatSettings(_section(data, "format"))
        self.stream = StreamSettings(_section(data, "stream"))
        self.engine = EngineSettings(_section(data, "engine"))
        self.channel = ChannelSettings(_section(data, "channel"))
        self.logging = _section(data, "logging")

    @classmethod
    def from_dict(cls, data: Dict) -> "CaptureSettings":
        return cls(data)


def load_settings(path: str) -> CaptureSettings:
    """
    Load task settings from a JSON file.

    Args:
        path: Path to the settings file

    Returns:
        CaptureSettings
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Settings file not found: {path}")
    with open(path, "r") as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise ConfigurationError(f"Settings file is not valid JSON: {e}", {"path": path})
    return CaptureSettings.from_dict(data)
