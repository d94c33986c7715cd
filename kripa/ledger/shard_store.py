"""File layout and persistence for day shards.

Layout under the analytics directory::

    <day>.json            live shard
    <day>.archive.json    detail lists rotated out of the live shard
    <day>.json.corrupt-<ts>  quarantined shard that failed to parse

All writes go through ``atomic_write_text``. Methods here are synchronous;
the ledger runs them in worker threads.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from kripa.errors import ShardCorruptError
from kripa.ledger.models import DailyShard, ShardArchive
from kripa.storage import atomic_write_text, read_text_if_exists

logger = logging.getLogger(__name__)

_DAY_FILE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.json$")

ModelT = TypeVar("ModelT", bound=BaseModel)


class ShardStore:
    """Reads and writes shard files in one directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def shard_path(self, day: str) -> Path:
        return self.directory / f"{day}.json"

    def archive_path(self, day: str) -> Path:
        return self.directory / f"{day}.archive.json"

    def _load(self, path: Path, model: type[ModelT]) -> ModelT | None:
        raw = read_text_if_exists(path)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            # Invalid JSON is reported by pydantic as a validation error too
            raise ShardCorruptError(str(path), f"{e.error_count()} validation error(s)") from e
        except UnicodeDecodeError as e:
            raise ShardCorruptError(str(path), "not valid UTF-8") from e

    def load_shard(self, day: str) -> DailyShard | None:
        """Load a live shard.

        Returns:
            The shard, or None when the file does not exist

        Raises:
            ShardCorruptError: If the file exists but cannot be parsed
        """
        return self._load(self.shard_path(day), DailyShard)

    def load_archive(self, day: str) -> ShardArchive | None:
        """Load a day archive.

        Returns:
            The archive, or None when the file does not exist

        Raises:
            ShardCorruptError: If the file exists but cannot be parsed
        """
        return self._load(self.archive_path(day), ShardArchive)

    @staticmethod
    def serialize(model: BaseModel) -> str:
        return model.model_dump_json()

    def save_shard(self, shard: DailyShard, payload: str | None = None) -> int:
        """Atomically replace the live shard file.

        Args:
            shard: Shard to write
            payload: Pre-serialized content of ``shard``, if already computed

        Returns:
            Bytes written
        """
        return atomic_write_text(self.shard_path(shard.day), payload or self.serialize(shard))

    def save_archive(self, archive: ShardArchive) -> int:
        """Atomically replace the archive file."""
        return atomic_write_text(self.archive_path(archive.day), self.serialize(archive))

    def quarantine(self, path: Path) -> Path:
        """Move a corrupt file aside so it is never re-read.

        Returns:
            New location of the file
        """
        target = path.with_name(f"{path.name}.corrupt-{int(time.time())}")
        path.replace(target)
        logger.error(f"❌ Quarantined corrupt shard {path.name} -> {target.name}")
        return target

    def list_days(self) -> list[str]:
        """Days that have a live shard, oldest first."""
        if not self.directory.exists():
            return []
        days = []
        for entry in self.directory.iterdir():
            match = _DAY_FILE_RE.match(entry.name)
            if match:
                days.append(match.group(1))
        return sorted(days)
