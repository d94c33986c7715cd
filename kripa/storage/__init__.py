"""Kripa storage helpers."""

from kripa.storage.atomic import atomic_write_text, read_text_if_exists
from kripa.storage.path_resolver import StoragePathResolver

__all__ = [
    "StoragePathResolver",
    "atomic_write_text",
    "read_text_if_exists",
]
