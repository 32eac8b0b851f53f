"""Mount backends.

This module provides:
- MountBackend: Abstract base class for listing and creating mounts
- SystemMounter: Uses mount(8), blkid(8) and mkfs(8) in the caller's namespace
- NsenterMounter: Same commands, executed in the host's mount namespace
- MockMounter: In-memory implementation (testing)
"""

from __future__ import annotations

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Filesystem used when an unformatted disk is mounted without an explicit type
DEFAULT_FSTYPE = "ext4"

# blkid exit status when no recognizable filesystem/partition table is found
BLKID_NOTHING_FOUND = 2


class MountError(Exception):
    """Error during mount operations."""


@dataclass(frozen=True)
class MountPoint:
    """One entry of the mount table."""

    device: str
    path: str
    fstype: str = ""
    options: tuple[str, ...] = ()


def _unescape(field_: str) -> str:
    """Decode the octal escapes used in /proc/mounts (e.g. \\040 for space)."""
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field_)


def parse_mounts(content: str) -> list[MountPoint]:
    """Parse the contents of a /proc/<pid>/mounts file.

    Args:
        content: File contents

    Returns:
        Mount points in table order
    """
    mounts: list[MountPoint] = []
    for line in content.splitlines():
        fields = line.split()
        if not fields:
            continue
        if len(fields) < 4:
            raise MountError(f"Malformed mount table line: {line!r}")
        mounts.append(
            MountPoint(
                device=_unescape(fields[0]),
                path=_unescape(fields[1]),
                fstype=fields[2],
                options=tuple(fields[3].split(",")),
            )
        )
    return mounts


def _run(cmd: list[str], timeout: int = 60) -> subprocess.CompletedProcess:
    """Run command and return result."""
    logger.debug(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)


class MountBackend(ABC):
    """Abstract base class for mount operations."""

    @abstractmethod
    def list_mounts(self) -> list[MountPoint]:
        """List current mounts.

        Raises:
            MountError: If the mount table cannot be read
        """

    @abstractmethod
    def format_and_mount(
        self, device: str, target: str, fstype: str = "", options: list[str] | None = None
    ) -> None:
        """Mount a device, formatting it first only if it has no filesystem.

        Args:
            device: Device path
            target: Mount target (must exist)
            fstype: Filesystem type; "" detects an existing one, or uses the
                default type when the disk is unformatted
            options: Mount options

        Raises:
            MountError: If formatting or mounting fails
        """

    @abstractmethod
    def mount(
        self, source: str, target: str, fstype: str = "", options: list[str] | None = None
    ) -> None:
        """Plain mount; never formats.

        Raises:
            MountError: If the mount fails
        """

    def resolve_mounted_device(self, target: str) -> str:
        """Return the device mounted at target, or "" if nothing is mounted there."""
        for m in self.list_mounts():
            if m.path == target:
                return m.device
        return ""


class SystemMounter(MountBackend):
    """Mount backend using the system mount tools in this process's namespace."""

    def __init__(
        self,
        mounts_file: Path = Path("/proc/self/mounts"),
        default_fstype: str = DEFAULT_FSTYPE,
        timeout: int = 600,
    ):
        """Initialize the mounter.

        Args:
            mounts_file: Mount table to read
            default_fstype: Type used when formatting a blank disk
            timeout: Timeout for each command in seconds (mkfs can be slow)
        """
        self.mounts_file = mounts_file
        self.default_fstype = default_fstype
        self.timeout = timeout

    def _command(self, cmd: list[str]) -> list[str]:
        """Wrap a command before execution (hook for namespace entry)."""
        return cmd

    def _exec(self, cmd: list[str]) -> subprocess.CompletedProcess:
        try:
            return _run(self._command(cmd), timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise MountError(f"{cmd[0]} failed: {e}") from e

    def list_mounts(self) -> list[MountPoint]:
        try:
            content = self.mounts_file.read_text()
        except OSError as e:
            raise MountError(f"Cannot read {self.mounts_file}: {e}") from e
        return parse_mounts(content)

    def mount(
        self, source: str, target: str, fstype: str = "", options: list[str] | None = None
    ) -> None:
        cmd = ["mount"]
        if fstype:
            cmd += ["-t", fstype]
        if options:
            cmd += ["-o", ",".join(options)]
        cmd += [source, target]

        result = self._exec(cmd)
        if result.returncode != 0:
            raise MountError(
                f"mount {source} on {target} failed: {result.stderr.decode().strip()}"
            )
        logger.info(f"Mounted {source} at {target}")

    def get_disk_format(self, device: str) -> str:
        """Detect the filesystem on a device.

        Returns:
            Filesystem type, or "" if the device is blank

        Raises:
            MountError: If detection fails, or the device holds a partition
                table rather than a filesystem
        """
        result = self._exec(["blkid", "-p", "-s", "TYPE", "-s", "PTTYPE", "-o", "export", device])
        if result.returncode == BLKID_NOTHING_FOUND:
            return ""
        if result.returncode != 0:
            raise MountError(
                f"blkid {device} failed: {result.stderr.decode().strip()}"
            )

        values: dict[str, str] = {}
        for line in result.stdout.decode().splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip()

        if "TYPE" in values:
            return values["TYPE"]
        if "PTTYPE" in values:
            raise MountError(f"{device} has a {values['PTTYPE']} partition table, refusing to format")
        return ""

    def _format(self, device: str, fstype: str) -> None:
        cmd = [f"mkfs.{fstype}"]
        if fstype in ("ext3", "ext4"):
            # Whole device; no reserved blocks
            cmd += ["-F", "-m0"]
        cmd.append(device)

        logger.info(f"Formatting {device} as {fstype}")
        result = self._exec(cmd)
        if result.returncode != 0:
            raise MountError(
                f"mkfs.{fstype} {device} failed: {result.stderr.decode().strip()}"
            )

    def format_and_mount(
        self, device: str, target: str, fstype: str = "", options: list[str] | None = None
    ) -> None:
        existing = self.get_disk_format(device)
        if not existing:
            existing = fstype or self.default_fstype
            logger.info(f"Disk {device} appears to be unformatted")
            self._format(device, existing)
        elif fstype and fstype != existing:
            logger.warning(
                f"Configured to mount {device} as {fstype} but it is formatted as "
                f"{existing}, mounting as {existing}"
            )

        self.mount(device, target, existing, options)


class NsenterMounter(SystemMounter):
    """Mount backend that runs every command in the host's mount namespace.

    For use when volmount runs in a container started with the host PID
    namespace (so PID 1 is the host's init) and the host root mounted at
    ``rootfs``. Paths passed to this backend are host paths.
    """

    def __init__(
        self,
        rootfs: Path = Path("/rootfs"),
        target_pid: int = 1,
        default_fstype: str = DEFAULT_FSTYPE,
        timeout: int = 600,
    ):
        super().__init__(
            mounts_file=rootfs / "proc" / str(target_pid) / "mounts",
            default_fstype=default_fstype,
            timeout=timeout,
        )
        self.rootfs = rootfs
        self.target_pid = target_pid

    def _command(self, cmd: list[str]) -> list[str]:
        return ["nsenter", f"--target={self.target_pid}", "--mount", "--"] + cmd


@dataclass
class MockMounter(MountBackend):
    """In-memory mount backend for testing.

    Args:
        mounts: Current mount table (mutated by successful mounts)
        formatted: device -> filesystem type of already formatted devices
        fail_list: If True, list_mounts raises MountError
        fail_devices: Devices whose format/mount fails
    """

    mounts: list[MountPoint] = field(default_factory=list)
    formatted: dict[str, str] = field(default_factory=dict)
    fail_list: bool = False
    fail_devices: set[str] = field(default_factory=set)

    format_calls: list[tuple[str, str, str]] = field(default_factory=list)
    mount_calls: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def mutation_count(self) -> int:
        return len(self.format_calls) + len(self.mount_calls)

    def list_mounts(self) -> list[MountPoint]:
        if self.fail_list:
            raise MountError("Mock failure listing mounts")
        return list(self.mounts)

    def add_mount(self, device: str, path: str, fstype: str = "ext4") -> None:
        """Add an existing mount (for testing)."""
        self.mounts.append(MountPoint(device=device, path=path, fstype=fstype))

    def format_and_mount(
        self, device: str, target: str, fstype: str = "", options: list[str] | None = None
    ) -> None:
        self.format_calls.append((device, target, fstype))
        if device in self.fail_devices:
            raise MountError(f"Mock failure mounting {device}")
        actual = self.formatted.setdefault(device, fstype or DEFAULT_FSTYPE)
        self.mounts.append(MountPoint(device=device, path=target, fstype=actual))

    def mount(
        self, source: str, target: str, fstype: str = "", options: list[str] | None = None
    ) -> None:
        self.mount_calls.append((source, target, fstype))
        if source in self.fail_devices:
            raise MountError(f"Mock failure mounting {source}")
        self.mounts.append(MountPoint(device=source, path=target, fstype=fstype))
