"""Reliability primitives — retry and circuit breaking for storage calls."""
