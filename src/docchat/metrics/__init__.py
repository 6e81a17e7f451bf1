"""Logging and Prometheus instrumentation."""
