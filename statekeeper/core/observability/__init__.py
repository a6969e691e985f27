"""Observability — logging, metrics, health."""
