"""
Engine Wiring
=============

Builds a CaptureEngine from validated CaptureSettings: picks the reader,
offset store, commit policy, flattener, codec and channel.

Usage:
    settings = load_settings("capture/configs/task_settings.json")
    engine = build_engine(settings)
    engine.start()
"""

import logging
from typing import Dict, List, Optional

from .codecs import create_codec
from .config import CaptureSettings
from .connectors.binlog_reader import BinlogChangeReader
from .connectors.channels import KafkaChannel, MemoryChannel, OutboundChannel
from .connectors.readers import ChangeStreamReader, ReplayChangeReader
from .engine import CaptureEngine, CompletionCallback
from .errors import ConfigurationError
from .flattening import RecordFlattener
from .policy import create_commit_policy
from .records import ChangeRecord
from .stores import MetadataStore, create_offset_store

logger = logging.getLogger(__name__)


def _replay_records(source, records: List[Dict]) -> List[ChangeRecord]:
    built = []
    for index, item in enumerate(records):
        if not isinstance(item, dict) or "position" not in item:
            raise ConfigurationError("Replay records need at least a 'position'", {"index": index})
        built.append(ChangeRecord(
            key=item.get("key"),
            value=item.get("value"),
            partition=item.get("partition", source.server_name or "replay"),
            position=item["position"],
            headers=item.get("headers"),
            topic=item.get("topic"),
        ))
    return built


def build_reader(settings: CaptureSettings, records: Optional[List[Dict]] = None) -> ChangeStreamReader:
    """Create the change-stream reader selected by source.connector."""
    source = settings.source
    if source.connector == "mysql":
        return BinlogChangeReader(
            server_name=source.server_name,
            connection=source.connection,
            tables=source.tables,
            server_id=source.server_id,
            tombstones_on_delete=source.tombstones_on_delete,
            heartbeat_interval=source.heartbeat_interval,
        )
    partitions = [source.server_name] if source.server_name else None
    return ReplayChangeReader(_replay_records(source, records or source.records), partitions=partitions)


def build_channel(settings: CaptureSettings) -> OutboundChannel:
    """Create the outbound channel selected by channel.type."""
    channel = settings.channel
    if channel.type == "kafka":
        return KafkaChannel(
            bootstrap_servers=channel.kafka["bootstrap_servers"],
            topic=channel.kafka.get("topic"),
            producer_config=channel.kafka.get("producer"),
            delivery_timeout=float(channel.kafka.get("delivery_timeout", 10.0)),
        )
    return MemoryChannel()


def build_flattener(settings: CaptureSettings) -> RecordFlattener:
    flattening = settings.flattening
    return RecordFlattener(
        enabled=flattening.enabled,
        delete_handling_mode=flattening.delete_handling_mode,
        drop_tombstones=flattening.drop_tombstones,
        add_fields=flattening.add_fields,
        add_headers=flattening.add_headers,
        deleted_field=flattening.deleted_field,
    )


def build_engine(
    settings: CaptureSettings,
    reader: Optional[ChangeStreamReader] = None,
    channel: Optional[OutboundChannel] = None,
    metadata_store: Optional[MetadataStore] = None,
    metrics=None,
    completion_callback: Optional[CompletionCallback] = None,
) -> CaptureEngine:
    """
    Build a ready-to-start engine.

    Every component is constructed here, so configuration problems raise
    ConfigurationError before start().

    Args:
        settings: Validated task settings
        reader: Reader to use instead of the configured source
        channel: Channel to use instead of the configured channel
        metadata_store: Metadata service client for metadata offset storage
        metrics: Optional CaptureMetrics
        completion_callback: Called once with (success, message, error)

    Returns:
        CaptureEngine in state CREATED
    """
    offset = settings.offset
    fmt = settings.format
    codec = create_codec(
        payload_format=fmt.payload,
        key_format=fmt.key,
        value_format=fmt.value,
        header_format=fmt.header,
        copy_headers=settings.stream.copy_headers,
        header_offset=settings.stream.header_offset,
    )
    engine = CaptureEngine(
        name=settings.name,
        reader=reader if reader is not None else build_reader(settings),
        offset_store=create_offset_store(offset, settings.name, metadata_store=metadata_store),
        flattener=build_flattener(settings),
        codec=codec,
        channel=channel if channel is not None else build_channel(settings),
        commit_policy=create_commit_policy(offset.policy, offset.flush_interval),
        completion_callback=completion_callback,
        shutdown_timeout=settings.engine.shutdown_timeout,
        poll_timeout=settings.engine.poll_timeout,
        on_encoding_error=settings.engine.on_encoding_error,
        publish_retries=settings.engine.publish_retries,
        commit_retries=settings.engine.commit_retries,
        retry_backoff=settings.engine.retry_backoff,
        metrics=metrics,
    )
    logger.info(
        f"Built capture engine {settings.name}: source={settings.source.connector}, "
        f"offsets={offset.storage}/{offset.policy}, codec={codec!r}, channel={settings.channel.type}"
    )
    return engine
