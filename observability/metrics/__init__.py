"""Prometheus metrics for the capture engine."""
