"""
Outbound Channels
=================

Where encoded change messages go. A channel's send() either delivers
the message or raises ChannelError; the engine only advances the offset
after send() returns.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from confluent_kafka import KafkaException, Producer

from ..codecs import OutboundMessage
from ..errors import ChannelError

logger = logging.getLogger(__name__)


class OutboundChannel:
    """Base outbound channel."""

    def send(self, message: OutboundMessage):
        raise NotImplementedError

    def close(self):
        """Release channel resources."""


class MemoryChannel(OutboundChannel):
    """Collects messages in a list, for embedding and tests."""

    def __init__(self):
        self._messages: List[OutboundMessage] = []
        self._lock = threading.Lock()

    def send(self, message: OutboundMessage):
        with self._lock:
            self._messages.append(message)

    @property
    def messages(self) -> List[OutboundMessage]:
        with self._lock:
            return list(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)


class KafkaChannel(OutboundChannel):
    """
    Publishes messages to Kafka and waits for each delivery report.

    The target topic is the configured topic, or the record's cdc_topic
    attribute when none is configured. The encoded header block and the
    routing attributes travel as Kafka headers.

    Args:
        bootstrap_servers: Broker address list
        topic: Fixed destination topic (optional)
        producer_config: Extra confluent_kafka producer settings
        delivery_timeout: Seconds to wait for the delivery report
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic: Optional[str] = None,
        producer_config: Optional[Dict[str, Any]] = None,
        delivery_timeout: float = 10.0,
    ):
        self.topic = topic
        self.delivery_timeout = delivery_timeout
        self._producer = Producer({
            "bootstrap.servers": bootstrap_servers,
            "acks": "all",
            **(producer_config or {}),
        })

    def send(self, message: OutboundMessage):
        topic = self.topic or message.topic
        if not topic:
            raise ChannelError("No destination topic for message", {"key": message.key})

        headers = [("cdc_headers", message.headers)]
        for name, value in message.attributes.items():
            if value is not None and name != "cdc_topic":
                headers.append((name, str(value).encode("utf-8")))

        errors = []

        def on_delivery(err, msg):
            if err is not None:
                errors.append(err)

        try:
            self._producer.produce(
                topic,
                key=message.key or None,
                value=message.value or None,
                headers=headers,
                on_delivery=on_delivery,
            )
        except (BufferError, KafkaException) as e:
            raise ChannelError(f"Failed to publish message: {e}", {"topic": topic}) from e

        remaining = self._producer.flush(self.delivery_timeout)
        if remaining > 0:
            raise ChannelError("Message not delivered before timeout", {"topic": topic})
        if errors:
            raise ChannelError(f"Message delivery failed: {errors[0]}", {"topic": topic})

    def close(self):
        self._producer.flush(self.delivery_timeout)
