"""
Kafka Offset Store
==================

Writes each offset update as a record on a (compacted) Kafka topic keyed
by partition id. On start the topic is read from the beginning up to the
high watermark, so get() resolves to the most recent record per key.
Durable and independent of the host the engine runs on.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from confluent_kafka import OFFSET_BEGINNING, Consumer, KafkaException, Producer, TopicPartition

from ..errors import OffsetStoreError
from .base import OffsetStore, dump_position, load_position

logger = logging.getLogger(__name__)


class KafkaOffsetStore(OffsetStore):
    """
    Offset store backed by a Kafka topic.

    Args:
        bootstrap_servers: Broker address list, e.g. "localhost:9092"
        topic: Offsets topic name
        producer_config: Extra confluent_kafka producer settings
        consumer_config: Extra confluent_kafka consumer settings
        flush_timeout: Seconds to wait for delivery on flush()
        read_timeout: Seconds allowed to replay the topic on start()
    """

    name = "kafka"

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        producer_config: Optional[Dict[str, Any]] = None,
        consumer_config: Optional[Dict[str, Any]] = None,
        flush_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ):
        super().__init__()
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.producer_config = producer_config or {}
        self.consumer_config = consumer_config or {}
        self.flush_timeout = flush_timeout
        self.read_timeout = read_timeout
        self._producer = None
        self._delivery_errors: List[str] = []

    def start(self):
        self._producer = Producer({
            "bootstrap.servers": self.bootstrap_servers,
            "acks": "all",
            **self.producer_config,
        })
        self._load()

    def _load(self):
        consumer = Consumer({
            "bootstrap.servers": self.bootstrap_servers,
            "group.id": f"{self.topic}-loader",
            "enable.auto.commit": False,
            "auto.offset.reset": "earliest",
            **self.consumer_config,
        })
        loaded: Dict[str, Any] = {}
        try:
            metadata = consumer.list_topics(self.topic, timeout=self.read_timeout)
            topic_metadata = metadata.topics.get(self.topic)
            if topic_metadata is None or topic_metadata.error is not None:
                logger.info(f"Offsets topic {self.topic} not found, starting empty")
                return

            remaining = {}
            for partition_id in topic_metadata.partitions:
                low, high = consumer.get_watermark_offsets(
                    TopicPartition(self.topic, partition_id), timeout=self.read_timeout
                )
                if high > low:
                    remaining[partition_id] = high
            if not remaining:
                return

            consumer.assign([
                TopicPartition(self.topic, partition_id, OFFSET_BEGINNING) for partition_id in remaining
            ])
            deadline = time.monotonic() + self.read_timeout
            while remaining:
                if time.monotonic() > deadline:
                    raise OffsetStoreError(
                        "Timed out reading offsets topic", {"topic": self.topic, "pending": len(remaining)}
                    )
                msg = consumer.poll(1.0)
                if msg is None:
                    continue
                if msg.error():
                    raise OffsetStoreError(f"Offsets topic read failed: {msg.error()}", {"topic": self.topic})
                key = msg.key().decode("utf-8") if msg.key() is not None else None
                if key is not None:
                    if msg.value() is None:
                        loaded.pop(key, None)
                    else:
                        loaded[key] = load_position(msg.value().decode("utf-8"))
                if msg.offset() + 1 >= remaining.get(msg.partition(), 0):
                    remaining.pop(msg.partition(), None)
        except KafkaException as e:
            raise OffsetStoreError(f"Failed to read offsets topic: {e}", {"topic": self.topic}) from e
        finally:
            consumer.close()
        with self._lock:
            self._data.update(loaded)
        logger.info(f"Loaded {len(loaded)} offset(s) from topic {self.topic}")

    def _on_delivery(self, err, msg):
        if err is not None:
            self._delivery_errors.append(str(err))

    def set(self, partition: str, position: Any):
        if self._producer is None:
            raise OffsetStoreError("Kafka offset store is not started", {"topic": self.topic})
        payload = dump_position(position)
        try:
            self._producer.produce(
                self.topic,
                key=partition.encode("utf-8"),
                value=payload.encode("utf-8"),
                on_delivery=self._on_delivery,
            )
            self._producer.poll(0)
        except (BufferError, KafkaException) as e:
            raise OffsetStoreError(f"Failed to produce offset: {e}", {"topic": self.topic}) from e
        with self._lock:
            self._data[partition] = position

    def flush(self):
        if self._producer is None:
            return
        remaining = self._producer.flush(self.flush_timeout)
        if remaining > 0:
            raise OffsetStoreError(
                "Offset records not delivered before timeout", {"topic": self.topic, "pending": remaining}
            )
        if self._delivery_errors:
            errors, self._delivery_errors = self._delivery_errors, []
            raise OffsetStoreError(f"Offset delivery failed: {errors[0]}", {"topic": self.topic, "failures": len(errors)})

    def close(self):
        if self._producer is not None:
            self._producer.flush(self.flush_timeout)
            self._producer = None

    def __repr__(self) -> str:
        return f"KafkaOffsetStore(topic={self.topic!r})"
