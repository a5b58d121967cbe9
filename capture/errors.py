"""
Capture Errors
==============

Exception hierarchy for the capture engine.

- ConfigurationError: rejected settings, raised before the engine starts
- TransientError: I/O failures that are retried (offset store, channel)
- EncodingError: a single record could not be serialized
- ReaderError: the change-stream reader failed and cannot resume
- EngineStateError: illegal lifecycle transition
"""

from typing import Any, Dict, Optional


class CaptureError(Exception):
    """Base exception for all capture errors.

    Attributes:
        message: Human-readable error description.
        details: Extra context (partition, position, backend...).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({context})"


class ConfigurationError(CaptureError):
    """Invalid or conflicting settings."""


class TransientError(CaptureError):
    """Failure that is safe to retry; the offset is left un-advanced."""


class OffsetStoreError(TransientError):
    """Offset store read, write or flush failed."""


class ChannelError(TransientError):
    """Outbound channel could not deliver a message."""


class EncodingError(CaptureError):
    """Record key, value or headers could not be serialized."""


class ReaderError(CaptureError):
    """Unrecoverable change-stream reader failure."""


class EngineStateError(CaptureError):
    """Lifecycle method called in the wrong state."""
