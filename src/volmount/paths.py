"""Host path translation.

When volmount runs directly on the host, host paths and local paths are the
same. When it runs inside a container, the host's root filesystem is
bind-mounted at a well-known location (``/rootfs`` by default), so a host
path such as ``/mnt/master-data`` is reachable locally as
``/rootfs/mnt/master-data``.

Every caller that touches a path states which view it wants:
- PathView.HOST: the path as the host sees it (mount table entries,
  commands executed in the host namespaces)
- PathView.LOCAL: where that host path is reachable from this process
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path


class PathView(Enum):
    """Which namespace a path is expressed in."""

    HOST = "host"
    LOCAL = "local"


class PathTranslator(ABC):
    """Maps host paths to the paths this process can use to reach them."""

    containerized: bool = False

    @abstractmethod
    def to_host_path(self, path: Path | str) -> Path:
        """Return where the host's ``path`` is reachable from this process."""

    def view(self, path: Path | str, view: PathView) -> Path:
        """Express a host path in the requested view."""
        if view == PathView.LOCAL:
            return self.to_host_path(path)
        return Path(path)


class IdentityPathTranslator(PathTranslator):
    """Running on the host: every path is already a host path."""

    containerized = False

    def to_host_path(self, path: Path | str) -> Path:
        return Path(path)


class RootfsPathTranslator(PathTranslator):
    """Running in a container with the host root mounted at ``rootfs``."""

    containerized = True

    def __init__(self, rootfs: Path = Path("/rootfs")):
        self.rootfs = Path(rootfs)

    def to_host_path(self, path: Path | str) -> Path:
        path = Path(path)
        if not path.is_absolute():
            raise ValueError(f"Host path must be absolute: {path}")
        return self.rootfs / path.relative_to("/")
