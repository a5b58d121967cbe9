"""Structured logging for the capture engine."""
