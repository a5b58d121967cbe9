"""
Capture Connectors
==================

Boundary adapters for the capture engine:
- change-stream readers (MySQL binlog, in-memory replay)
- outbound channels (Kafka, in-memory)
"""

from .readers import END_OF_STREAM, ChangeStreamReader, ReplayChangeReader
from .channels import KafkaChannel, MemoryChannel, OutboundChannel

__all__ = [
    "END_OF_STREAM",
    "ChangeStreamReader",
    "ReplayChangeReader",
    "OutboundChannel",
    "MemoryChannel",
    "KafkaChannel",
]
