"""
Structured Logging
==================

JSON log lines for the capture engine.

Features:
- JSON-formatted logs with module, function and line
- Thread-local context (connector name, partition...) added to every line
- One-call setup for the CLI runner
"""

import json
import logging
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone

# Thread-local storage for context
_context = threading.local()

_RESERVED = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
}

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        context = getattr(_context, 'data', None)
        if context:
            log_entry["context"] = context.copy()

        if self.include_extra:
            for key in set(record.__dict__.keys()) - _RESERVED:
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


@contextmanager
def log_context(**kwargs):
    """
    Add fields to every log line emitted by this thread within the block.

    Usage:
        with log_context(connector="propwise-capture"):
            logger.info("Engine started")
    """
    if not hasattr(_context, 'data'):
        _context.data = {}

    old_data = _context.data.copy()
    _context.data.update(kwargs)
    try:
        yield
    finally:
        _context.data = old_data


def configure_logging(level: str = "INFO", json_format: bool = True, stream=None) -> logging.Handler:
    """
    Install a single console handler on the root logger.

    Args:
        level: Log level name
        json_format: JSON lines when True, plain text otherwise
        stream: Output stream (stdout by default)

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return handler
