#!/usr/bin/env python3
"""
Capture Runner
==============

CLI to run the capture engine.

Usage:
    python -m capture.run_capture run --config capture/configs/task_settings.json
    python -m capture.run_capture check --config capture/configs/task_settings.json
"""

import argparse
import logging
import signal
import sys

from observability.logging.structured_logger import configure_logging
from observability.metrics.collector import CaptureMetrics

from .config import load_settings
from .errors import ConfigurationError
from .factory import build_engine

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "capture/configs/task_settings.json"


def check_settings(config_path: str) -> bool:
    """Validate settings and build (without starting) the engine."""
    print("=" * 60)
    print("CHECKING CAPTURE SETTINGS")
    print("=" * 60)
    try:
        settings = load_settings(config_path)
        engine = build_engine(settings)
    except ConfigurationError as e:
        print(f"\n✗ Invalid settings: {e}")
        return False

    print(f"\n✓ Connector: {settings.name}")
    print(f"    Source: {settings.source.connector}")
    print(f"    Offset storage: {settings.offset.storage} ({settings.offset.policy}, "
          f"flush interval {settings.offset.flush_interval}s)")
    print(f"    Codec: {engine.codec!r}")
    print(f"    Channel: {settings.channel.type}")
    engine.close()
    return True


def run_capture(config_path: str, log_level: str = None, show_metrics: bool = False) -> bool:
    """Run the engine until the stream ends or a signal arrives."""
    settings = load_settings(config_path)
    configure_logging(
        level=log_level or settings.logging.get("level", "INFO"),
        json_format=settings.logging.get("json", True),
    )

    metrics = CaptureMetrics(settings.name, pushgateway_url=settings.logging.get("pushgateway_url"))
    engine = build_engine(settings, metrics=metrics)

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        # the main thread is already in engine.wait()
        engine.stop(timeout=0)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    engine.start()
    result = engine.wait()
    engine.close()

    logger.info(f"Capture finished: {result.message}, records: {engine.stats()}")
    if show_metrics:
        print(metrics.render())
    if metrics.pushgateway_url:
        metrics.push()
    return result.success


def main():
    parser = argparse.ArgumentParser(description="Propwise Capture Engine")
    parser.add_argument(
        "command",
        choices=["run", "check"],
        nargs="?",
        default="run",
        help="Command to run"
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="Path to task settings JSON")
    parser.add_argument("--log-level", help="Override logging.level from the settings")
    parser.add_argument("--metrics", action="store_true", help="Print Prometheus metrics on exit")

    args = parser.parse_args()

    if args.command == "check":
        success = check_settings(args.config)
    else:
        try:
            success = run_capture(args.config, log_level=args.log_level, show_metrics=args.metrics)
        except ConfigurationError as e:
            print(f"✗ Invalid settings: {e}", file=sys.stderr)
            success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
