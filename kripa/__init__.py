"""Kripa - semantic story retrieval with daily quotas and event analytics."""

__version__ = "0.1.0"
