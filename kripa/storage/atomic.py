"""Write-then-replace file persistence.

Readers of a file written here observe either the previous complete content
or the new complete content, never a partial write.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> int:
    """Write text to ``path`` atomically.

    Steps:
        1. Create a temp file beside the target (same filesystem)
        2. Write and fsync the content
        3. ``os.replace`` the temp file over the target

    Args:
        path: Destination file
        data: Text content
        encoding: Text encoding

    Returns:
        Number of bytes written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = data.encode(encoding)

    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        with contextlib.suppress(OSError):
            os.unlink(temp_path)
        raise

    logger.debug(f"Atomically wrote {len(payload)} bytes to {path}")
    return len(payload)


def read_text_if_exists(path: Path, encoding: str = "utf-8") -> str | None:
    """Read a file, returning None when it does not exist.

    Args:
        path: File to read
        encoding: Text encoding

    Returns:
        File content or None if missing
    """
    try:
        return path.read_text(encoding=encoding)
    except FileNotFoundError:
        return None
