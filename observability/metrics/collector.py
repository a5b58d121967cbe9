"""
Capture Metrics
===============

Prometheus metrics for the capture engine, kept in a private registry so
several engines (or tests) in one process do not collide.

Metrics:
- capture_records_total{connector, outcome}: published, dropped, skipped, failed
- capture_commits_total{connector, status}: success, failed
- capture_last_commit_timestamp_seconds{connector}
- capture_publish_retries_total{connector}
"""

import logging
import threading
import time
from typing import Dict, Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, generate_latest, push_to_gateway
)

logger = logging.getLogger(__name__)


class CaptureMetrics:
    """
    Collects engine metrics.

    Usage:
        metrics = CaptureMetrics("propwise-capture")
        metrics.record_outcome("published")
        metrics.record_commit(success=True)
        print(metrics.render())
    """

    METRIC_DEFINITIONS = {
        "capture_records_total": {
            "type": "counter",
            "description": "Change records processed by outcome",
            "labels": ["connector", "outcome"]
        },
        "capture_commits_total": {
            "type": "counter",
            "description": "Offset commit attempts by status",
            "labels": ["connector", "status"]
        },
        "capture_last_commit_timestamp_seconds": {
            "type": "gauge",
            "description": "Unix time of the last successful offset commit",
            "labels": ["connector"]
        },
        "capture_publish_retries_total": {
            "type": "counter",
            "description": "Publish attempts that were retried",
            "labels": ["connector"]
        },
    }

    def __init__(self, connector: str, pushgateway_url: Optional[str] = None):
        """
        Args:
            connector: Connector name, added as a label to every metric
            pushgateway_url: Prometheus Pushgateway URL for push()
        """
        self.connector = connector
        self.pushgateway_url = pushgateway_url
        self.registry = CollectorRegistry()
        self._metrics: Dict = {}
        self._lock = threading.Lock()

        for name, definition in self.METRIC_DEFINITIONS.items():
            metric_class = Counter if definition["type"] == "counter" else Gauge
            self._metrics[name] = metric_class(
                name, definition["description"], definition["labels"], registry=self.registry
            )

    def record_outcome(self, outcome: str, count: int = 1):
        with self._lock:
            self._metrics["capture_records_total"].labels(
                connector=self.connector, outcome=outcome
            ).inc(count)

    def record_commit(self, success: bool):
        with self._lock:
            status = "success" if success else "failed"
            self._metrics["capture_commits_total"].labels(connector=self.connector, status=status).inc()
            if success:
                self._metrics["capture_last_commit_timestamp_seconds"].labels(
                    connector=self.connector
                ).set(time.time())

    def record_publish_retry(self):
        with self._lock:
            self._metrics["capture_publish_retries_total"].labels(connector=self.connector).inc()

    def value(self, name: str, **labels) -> float:
        """Current sample value, 0 when never recorded."""
        sample = self.registry.get_sample_value(name, {"connector": self.connector, **labels})
        return sample or 0.0

    def render(self) -> str:
        """Metrics in Prometheus exposition format."""
        return generate_latest(self.registry).decode("utf-8")

    def push(self, job: str = "capture") -> bool:
        """Push metrics to the Prometheus Pushgateway."""
        if not self.pushgateway_url:
            logger.warning("Pushgateway URL not configured")
            return False
        try:
            push_to_gateway(self.pushgateway_url, job=job, registry=self.registry)
            return True
        except Exception as e:
            logger.error(f"Failed to push metrics: {e}")
            return False
