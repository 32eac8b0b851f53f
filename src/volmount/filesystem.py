"""Filesystem abstraction layer for testability.

This module provides a small protocol for the filesystem operations the
volume controller needs, and two implementations:
- RealFilesystem: Uses actual system calls (production)
- MockFilesystem: In-memory implementation (testing)
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


class FilesystemError(Exception):
    """Base exception for filesystem errors."""


class FileNotFoundError_(FilesystemError):
    """File or directory not found."""


class PermissionError_(FilesystemError):
    """Permission denied."""


class Filesystem(ABC):
    """Abstract base class for filesystem operations."""

    @abstractmethod
    def exists(self, path: Path) -> bool:
        """Check if path exists.

        Raises:
            FilesystemError: If existence cannot be determined (e.g. EACCES)
        """

    @abstractmethod
    def mkdir(
        self,
        path: Path,
        parents: bool = False,
        exist_ok: bool = False,
        mode: int = 0o777,
    ) -> None:
        """Create directory."""

    @abstractmethod
    def realpath(self, path: Path) -> Path:
        """Resolve symlinks (e.g. /dev/disk/by-id links to device nodes)."""


class RealFilesystem(Filesystem):
    """Real filesystem implementation using actual system calls."""

    def exists(self, path: Path) -> bool:
        # Path.exists() swallows EACCES; only a missing path means "no".
        try:
            os.stat(path)
        except FileNotFoundError:
            return False
        except PermissionError as e:
            raise PermissionError_(str(path)) from e
        except OSError as e:
            raise FilesystemError(f"Error checking {path}: {e}") from e
        return True

    def mkdir(
        self,
        path: Path,
        parents: bool = False,
        exist_ok: bool = False,
        mode: int = 0o777,
    ) -> None:
        try:
            if parents:
                # Path.mkdir(parents=True) only gives `mode` to the last component
                missing = [p for p in path.parents if not p.exists()]
                for parent in reversed(missing):
                    parent.mkdir(mode=mode, exist_ok=True)
            path.mkdir(mode=mode, exist_ok=exist_ok)
        except FileNotFoundError as e:
            raise FileNotFoundError_(str(path)) from e
        except PermissionError as e:
            raise PermissionError_(str(path)) from e
        except OSError as e:
            raise FilesystemError(str(e)) from e

    def realpath(self, path: Path) -> Path:
        return Path(os.path.realpath(path))


@dataclass
class MockDir:
    """Represents a directory in the mock filesystem."""

    mode: int = 0o755


@dataclass
class MockFilesystem(Filesystem):
    """In-memory mock filesystem for testing.

    Device nodes are modelled as plain files; symlinks as a path -> target map.
    """

    _files: dict[Path, str] = field(default_factory=dict)
    _dirs: dict[Path, MockDir] = field(default_factory=dict)
    _symlinks: dict[Path, Path] = field(default_factory=dict)

    # Paths whose lookup fails with EACCES
    denied: set[Path] = field(default_factory=set)

    def __post_init__(self) -> None:
        # Root always exists
        self._dirs[Path("/")] = MockDir()

    def _normalize(self, path: Path) -> Path:
        """Normalize path to absolute, without following symlinks."""
        path = Path(path)
        if not path.is_absolute():
            path = Path("/") / path
        return Path(os.path.normpath(path))

    def _check_access(self, path: Path) -> None:
        if path in self.denied:
            raise PermissionError_(str(path))

    def exists(self, path: Path) -> bool:
        path = self._normalize(path)
        self._check_access(path)
        return path in self._files or path in self._dirs or path in self._symlinks

    def is_dir(self, path: Path) -> bool:
        """Check if path is a directory (for testing)."""
        path = self._normalize(path)
        return self.realpath(path) in self._dirs

    def mkdir(
        self,
        path: Path,
        parents: bool = False,
        exist_ok: bool = False,
        mode: int = 0o777,
    ) -> None:
        path = self._normalize(path)
        self._check_access(path)

        if path in self._dirs:
            if exist_ok:
                return
            raise FilesystemError(f"Directory exists: {path}")

        if path in self._files:
            raise FilesystemError(f"File exists at path: {path}")

        parent = path.parent
        if parent not in self._dirs:
            if parents:
                self.mkdir(parent, parents=True, exist_ok=True, mode=mode)
            else:
                raise FileNotFoundError_(str(parent))

        self._dirs[path] = MockDir(mode=mode)

    def realpath(self, path: Path) -> Path:
        path = self._normalize(path)
        seen: set[Path] = set()
        while path in self._symlinks and path not in seen:
            seen.add(path)
            target = self._symlinks[path]
            if not target.is_absolute():
                target = path.parent / target
            path = self._normalize(target)
        return path

    def add_device(self, device: Path | str) -> None:
        """Create a device node, and any missing parent directories (for testing)."""
        path = self._normalize(Path(device))
        self.mkdir(path.parent, parents=True, exist_ok=True)
        self._files[path] = ""

    def symlink(self, target: Path | str, link: Path | str) -> None:
        """Create symbolic link at link pointing to target (for testing)."""
        link = self._normalize(Path(link))
        if link.parent not in self._dirs:
            raise FileNotFoundError_(str(link.parent))
        self._symlinks[link] = Path(target)

    def mode_of(self, path: Path) -> int:
        """Mode a directory was created with (for testing)."""
        path = self._normalize(path)
        if path not in self._dirs:
            raise FileNotFoundError_(str(path))
        return self._dirs[path].mode
