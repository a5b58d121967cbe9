"""
Offset Stores
=============

Interchangeable durable stores for the engine checkpoint:
- memory: in-process only
- file: local JSON file
- kafka: compacted Kafka topic
- metadata: shared key/value metadata service (dict, PostgreSQL, MinIO)

Exactly one store is active per engine; it is chosen explicitly from the
offset settings.
"""

from typing import Optional

from ..errors import ConfigurationError
from .base import OffsetStore
from .file import FileOffsetStore
from .kafka import KafkaOffsetStore
from .memory import MemoryOffsetStore
from .metadata import (
    MetadataOffsetStore,
    MetadataStore,
    MinIOMetadataStore,
    PostgresMetadataStore,
    SimpleMetadataStore,
)


def create_metadata_store(backend: str, metadata_settings: dict) -> MetadataStore:
    """Build the metadata service client for the metadata offset store."""
    connection = metadata_settings.get("connection") or {}
    if backend == "memory":
        return SimpleMetadataStore()
    if backend == "postgres":
        return PostgresMetadataStore(
            connection,
            table=metadata_settings.get("table", "capture_metadata_store"),
            region=metadata_settings.get("region", "DEFAULT"),
        )
    if backend == "minio":
        return MinIOMetadataStore(connection, prefix=metadata_settings.get("prefix", "capture/metadata"))
    raise ConfigurationError(f"Unknown metadata store backend: {backend}")


def create_offset_store(offset_settings, name: str, metadata_store: Optional[MetadataStore] = None) -> OffsetStore:
    """
    Build the offset store selected by the offset settings.

    Args:
        offset_settings: OffsetSettings
        name: Connector name, used as namespace for shared stores
        metadata_store: Existing metadata service client to reuse

    Returns:
        OffsetStore (not started)
    """
    storage = offset_settings.storage
    if storage == "memory":
        return MemoryOffsetStore()
    if storage == "file":
        return FileOffsetStore(offset_settings.file["path"])
    if storage == "kafka":
        kafka = offset_settings.kafka
        return KafkaOffsetStore(
            bootstrap_servers=kafka["bootstrap_servers"],
            topic=kafka["topic"],
            producer_config=kafka.get("producer"),
            consumer_config=kafka.get("consumer"),
            flush_timeout=offset_settings.commit_timeout,
        )
    if storage == "metadata":
        if metadata_store is None:
            metadata_store = create_metadata_store(offset_settings.metadata_backend, offset_settings.metadata)
        return MetadataOffsetStore(metadata_store, namespace=offset_settings.metadata.get("namespace", name))
    raise ConfigurationError(f"No offset store backend for storage type: {storage}")


__all__ = [
    "OffsetStore",
    "MemoryOffsetStore",
    "FileOffsetStore",
    "KafkaOffsetStore",
    "MetadataOffsetStore",
    "MetadataStore",
    "SimpleMetadataStore",
    "PostgresMetadataStore",
    "MinIOMetadataStore",
    "create_offset_store",
    "create_metadata_store",
]
