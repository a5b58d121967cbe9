"""
Capture Observability
=====================

Logging and metrics for the capture engine.

Components:
- metrics: Prometheus metrics for processed records and offset commits
- logging: JSON structured logging with thread-local context

Usage:
    from observability import CaptureMetrics, configure_logging, log_context

    configure_logging("INFO", json_format=True)
    metrics = CaptureMetrics("propwise-capture")
"""

from .metrics.collector import CaptureMetrics
from .logging.structured_logger import JsonFormatter, configure_logging, log_context

__version__ = "1.0.0"
__all__ = ["CaptureMetrics", "JsonFormatter", "configure_logging", "log_context"]
