"""
Propwise Capture Engine
=======================

A change-capture ingestion engine that:
- Reads row-level changes (insert/update/delete) from a change-stream reader
- Flattens and serializes each change (JSON, Avro or Arrow)
- Publishes every change to an outbound channel
- Checkpoints how far it has read so a restart resumes where it left off

Delivery is at-least-once: after a crash, records processed since the last
committed offset are delivered again.
"""

from .records import ChangeRecord, FlattenedRecord, DROPPED
from .offsets import Offset
from .engine import CaptureEngine, CompletionResult

__version__ = "1.0.0"
__all__ = [
    "ChangeRecord",
    "FlattenedRecord",
    "DROPPED",
    "Offset",
    "CaptureEngine",
    "CompletionResult",
]
