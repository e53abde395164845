"""Shared utilities: money arithmetic, errors, concurrency and recovery."""
