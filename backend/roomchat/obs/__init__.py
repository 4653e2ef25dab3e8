"""Observability helpers: structured logging and Prometheus metrics."""
