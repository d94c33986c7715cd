"""Storage path resolver for Kripa.

Implements environment-aware path resolution with XDG Base Directory compliance.
Supports local development, containerized production, and testing environments.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS: Final = sys.platform == "win32"
IS_MACOS: Final = sys.platform == "darwin"


class StoragePathResolver:
    """Resolves storage paths based on deployment environment."""

    def __init__(self, env: str | None = None, project_dir: Path | None = None) -> None:
        """Initialize path resolver.

        Args:
            env: Force specific environment ('local', 'container', 'development', 'test')
            project_dir: Current project directory (defaults to cwd)
        """
        self.env = env or self._detect_environment()
        self.project_dir = project_dir or Path.cwd()
        self.base_path = self._resolve_base_path()

    def _detect_environment(self) -> str:
        """Auto-detect deployment environment.

        Returns:
            Environment type: 'container', 'local', 'development', or 'test'
        """
        if env_var := os.getenv("KRIPA_ENV"):
            return env_var

        if self._is_container():
            return "container"

        if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
            return "test"

        return "local"

    def _is_container(self) -> bool:
        """Check if running in a container.

        Returns:
            True if running in Docker/Podman/container
        """
        if Path("/.dockerenv").exists():
            return True

        if Path("/proc/1/cgroup").exists():
            try:
                cgroup = Path("/proc/1/cgroup").read_text()
                if "/docker/" in cgroup or "/kubepods/" in cgroup:
                    return True
            except OSError:
                pass

        return False

    def _resolve_base_path(self) -> Path:
        """Resolve base storage path by environment.

        Returns:
            Base path for Kripa data storage
        """
        if override := os.getenv("KRIPA_DATA_PATH"):
            return Path(override)

        if self.env == "container":
            return Path("/data/kripa")

        elif self.env == "local":
            return self._get_xdg_data_path()

        elif self.env == "development":
            return self.project_dir / ".kripa" / "data"

        elif self.env == "test":
            return Path("/tmp") / "kripa" / "test"

        else:
            logger.warning(f"Unknown environment '{self.env}', using local development paths")
            return self._get_xdg_data_path()

    def _get_xdg_data_path(self) -> Path:
        """Get XDG data directory path.

        Returns:
            Path to XDG data directory for Kripa
        """
        if IS_WINDOWS:
            local_app_data = os.getenv("LOCALAPPDATA")
            if local_app_data:
                return Path(local_app_data) / "kripa"
            return Path.home() / ".kripa" / "data"

        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / "kripa"

        if IS_MACOS:
            return Path.home() / "Library" / "Application Support" / "kripa"

        return Path.home() / ".local" / "share" / "kripa"

    def get_analytics_dir(self) -> Path:
        """Get directory holding one analytics shard file per day.

        Returns:
            Path to analytics directory
        """
        if override := os.getenv("KRIPA_ANALYTICS_PATH"):
            return Path(override)

        return self.base_path / "analytics"

    def get_quota_store_path(self) -> Path:
        """Get quota counter store file path.

        Returns:
            Path to counters.json
        """
        return self.base_path / "quota" / "counters.json"

    def get_corpus_dir(self) -> Path:
        """Get directory holding the story corpus artifacts.

        Returns:
            Path to corpus directory
        """
        if override := os.getenv("KRIPA_CORPUS_PATH"):
            return Path(override)

        return self.base_path / "corpus"

