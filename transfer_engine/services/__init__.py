"""Recommendation services."""
