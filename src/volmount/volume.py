"""Volumes and volume providers.

This module provides:
- Volume: a block-storage volume candidate
- VolumeProvider: Abstract base class for providers (cloud APIs, static disks)
- StaticVolumeProvider: Volumes declared in configuration as device paths
- MockVolumeProvider: In-memory provider for testing
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .filesystem import Filesystem, FilesystemError
from .paths import PathTranslator, PathView

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Error talking to the volume provider."""


class AttachError(ProviderError):
    """An attach attempt failed, usually because another host won the race."""


class AttachContractError(Exception):
    """The provider reported a successful attach without setting a device.

    Intentionally not a ProviderError: nothing in the mount path may swallow
    it, since continuing would derive mount targets from invalid state.
    """


@dataclass
class Volume:
    """A block-storage volume candidate.

    Args:
        provider_id: Stable identifier assigned by the provider
        mount_name: Name used to derive the mount target (/mnt/<mount_name>)
        attached_to: Host currently owning the attachment, empty if unattached
        local_device: Device path once attached to this host, else empty
        mountpoint: Where this controller mounted the volume, else empty
    """

    provider_id: str
    mount_name: str
    attached_to: str = ""
    local_device: str = ""
    mountpoint: str = ""

    @property
    def is_attached_locally(self) -> bool:
        return bool(self.local_device)

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoint)

    def to_dict(self) -> dict:
        return asdict(self)


class VolumeProvider(ABC):
    """Abstract base class for volume providers."""

    @abstractmethod
    def find_volumes(self) -> list[Volume]:
        """Enumerate candidate volumes.

        Raises:
            ProviderError: If the volumes cannot be listed
        """

    @abstractmethod
    def attach_volume(self, volume: Volume) -> None:
        """Attach a volume to this host.

        On success the volume's local_device must be set.

        Raises:
            AttachError: If the attach failed (e.g. lost a race)
        """

    @abstractmethod
    def find_mounted_volume(self, volume: Volume) -> str:
        """Return the device path the OS exposes for an attached volume.

        Returns:
            Device path, or "" if the device has not shown up yet
        """


@dataclass
class VolumeSpec:
    """A statically declared volume: ``id:mount_name:device``."""

    provider_id: str
    mount_name: str
    device: str

    @classmethod
    def parse(cls, spec: str) -> VolumeSpec:
        parts = spec.strip().split(":")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid volume spec {spec!r}, expected id:mount_name:device")
        provider_id, mount_name, device = parts
        if not device.startswith("/"):
            raise ValueError(f"Invalid volume spec {spec!r}, device must be an absolute path")
        if "/" in mount_name:
            raise ValueError(f"Invalid volume spec {spec!r}, mount name must not contain '/'")
        return cls(provider_id=provider_id, mount_name=mount_name, device=device)

    def __str__(self) -> str:
        return f"{self.provider_id}:{self.mount_name}:{self.device}"


class StaticVolumeProvider(VolumeProvider):
    """Provider for volumes that are attached outside of volmount.

    Used on bare metal, or where the platform attaches disks at boot. A
    declared volume counts as attached to this host when its device node
    exists on the host. Attaching cannot be forced: if the node is missing,
    the attach fails and the controller moves on to the next candidate.
    """

    def __init__(
        self,
        specs: list[VolumeSpec],
        fs: Filesystem,
        paths: PathTranslator,
        host_id: str,
    ):
        """Initialize the provider.

        Args:
            specs: Declared volumes
            fs: Filesystem abstraction (local view)
            paths: Translator used to reach host device nodes
            host_id: Identifier reported as the attachment owner
        """
        self.specs = specs
        self.fs = fs
        self.paths = paths
        self.host_id = host_id

    def _device_present(self, device: str) -> bool:
        try:
            return self.fs.exists(self.paths.view(device, PathView.LOCAL))
        except FilesystemError as e:
            raise ProviderError(f"Error checking device {device}: {e}") from e

    def find_volumes(self) -> list[Volume]:
        volumes = []
        for spec in self.specs:
            volume = Volume(provider_id=spec.provider_id, mount_name=spec.mount_name)
            if self._device_present(spec.device):
                volume.attached_to = self.host_id
                volume.local_device = spec.device
            volumes.append(volume)
        logger.debug(f"Found {len(volumes)} declared volume(s)")
        return volumes

    def _spec_for(self, volume: Volume) -> VolumeSpec:
        for spec in self.specs:
            if spec.provider_id == volume.provider_id:
                return spec
        raise ProviderError(f"Unknown volume {volume.provider_id!r}")

    def attach_volume(self, volume: Volume) -> None:
        spec = self._spec_for(volume)
        if not self._device_present(spec.device):
            raise AttachError(f"Device {spec.device} for volume {volume.provider_id} is not present")
        volume.attached_to = self.host_id
        volume.local_device = spec.device

    def find_mounted_volume(self, volume: Volume) -> str:
        spec = self._spec_for(volume)
        if not self._device_present(spec.device):
            return ""

        # Follow /dev/disk/by-* links to the real node, then map back to a host path
        resolved = self.fs.realpath(self.paths.view(spec.device, PathView.LOCAL))
        if self.paths.containerized:
            root = self.paths.to_host_path("/")
            try:
                resolved = Path("/") / resolved.relative_to(root)
            except ValueError:
                return spec.device
        return str(resolved)


@dataclass
class MockVolumeProvider(VolumeProvider):
    """In-memory provider for testing.

    Args:
        volumes: Volumes returned by find_volumes (shared, mutated in place)
        host_id: Identifier of the local host
        fail_attach: provider_ids whose attach fails (simulated race loss)
        devices: provider_id -> device path set on successful attach
        polls_until_device: Number of find_mounted_volume calls returning ""
            before the device shows up
        broken_contract: If True, attach "succeeds" without setting a device
    """

    volumes: list[Volume] = field(default_factory=list)
    host_id: str = "local-host"
    fail_attach: set[str] = field(default_factory=set)
    devices: dict[str, str] = field(default_factory=dict)
    polls_until_device: int = 0
    broken_contract: bool = False
    fail_find: bool = False

    attach_calls: list[str] = field(default_factory=list)
    poll_count: int = 0

    def find_volumes(self) -> list[Volume]:
        if self.fail_find:
            raise ProviderError("Mock failure listing volumes")
        return list(self.volumes)

    def attach_volume(self, volume: Volume) -> None:
        self.attach_calls.append(volume.provider_id)
        if volume.provider_id in self.fail_attach:
            volume.attached_to = "other-host"
            raise AttachError(f"Volume {volume.provider_id} is attached to another host")
        volume.attached_to = self.host_id
        if not self.broken_contract:
            volume.local_device = self.devices.get(
                volume.provider_id, f"/dev/disk/by-id/{volume.provider_id}"
            )

    def find_mounted_volume(self, volume: Volume) -> str:
        self.poll_count += 1
        if self.poll_count <= self.polls_until_device:
            return ""
        return volume.local_device
