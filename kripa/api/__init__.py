"""Kripa HTTP API."""

from kripa.api.app import create_app

__all__ = ["create_app"]
