"""Volume mount controller.

This module provides the VolumeMountController that takes a host from
"no volume" to "exactly one volume attached and mounted":
- Attaching a volume, tolerating races with other hosts
- Waiting for the attached device to show up
- Formatting (only if blank) and mounting it, idempotently
- Bridging the mount into our own namespace when containerized

All decisions are made against the provider's attachment records and the
real mount table, never against cached state, so the controller is safe to
re-run after a restart.

Liveness caveat: waiting for the device has no attempt limit. A volume whose
device never appears blocks the caller until ControllerConfig.stop_event is
set (the CLI sets it on SIGTERM/SIGINT).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Event, Lock

from .filesystem import Filesystem, FilesystemError
from .mount import MountBackend, MountError, SystemMounter
from .paths import PathTranslator, PathView
from .volume import AttachContractError, AttachError, ProviderError, Volume, VolumeProvider

logger = logging.getLogger(__name__)


class VolumeMountError(Exception):
    """A volume could not be mounted; the controller moves on to the next one."""


class AmbiguousMountError(VolumeMountError):
    """More than one mount exists at the target. Needs operator intervention."""


class DeviceMismatchError(VolumeMountError):
    """The target is already mounted, but with a different device."""


class WaitCancelledError(Exception):
    """Waiting for a device was cancelled via the stop event."""


class VolumeState(Enum):
    """Progress of a single volume, as observed by the controller."""

    UNATTACHED = 0
    ATTACHED = 1
    DEVICE_FOUND = 2
    MOUNTED = 3
    BRIDGED = 4


@dataclass
class ControllerConfig:
    """Configuration for the VolumeMountController."""

    poll_interval: float = 1.0  # Seconds between device lookups
    fstype: str = ""  # "" = detect, or default type for blank disks

    # Mount targets are <disks_dir>/<name> if disks_dir exists, else <mount_root>/<name>.
    # On Container-Optimized OS /mnt is read-only and /mnt/disks is writable.
    mount_root: Path = Path("/mnt")
    disks_dir: Path = Path("/mnt/disks")
    dir_mode: int = 0o750

    # Set to cancel an in-progress device wait (None = wait forever)
    stop_event: Event | None = None


class VolumeMountController:
    """Attaches and mounts at most one volume on this host.

    The flow for mount_volumes():
    1. Attach: reuse a volume already attached here, or attach the first
       candidate that nobody else owns
    2. Wait for the provider to report the device path
    3. Mount it at the derived target unless the target is already mounted
    4. If containerized, mount the same device inside our own namespace

    Mounted volumes are remembered for the lifetime of the controller; the
    mapping only grows.
    """

    def __init__(
        self,
        provider: VolumeProvider,
        mounter: MountBackend,
        paths: PathTranslator,
        fs: Filesystem,
        config: ControllerConfig | None = None,
        local_mounter: MountBackend | None = None,
    ):
        """Initialize the controller.

        Args:
            provider: Volume provider
            mounter: Mount backend operating on the host (host paths)
            paths: Host path translator; decides whether we are containerized
            fs: Filesystem abstraction (local paths)
            config: Optional configuration
            local_mounter: Mount backend for our own namespace, used only when
                containerized (default: SystemMounter)
        """
        self.provider = provider
        self.mounter = mounter
        self.paths = paths
        self.fs = fs
        self.config = config or ControllerConfig()
        self.local_mounter = local_mounter or SystemMounter()

        self._mounted: dict[str, Volume] = {}
        self._states: dict[str, VolumeState] = {}
        self._state_lock = Lock()
        # Serializes mount_volumes() so concurrent callers never race each other
        self._run_lock = Lock()

    @property
    def containerized(self) -> bool:
        return self.paths.containerized

    @property
    def mounted_volumes(self) -> list[Volume]:
        """Snapshot of the volumes mounted by this controller."""
        with self._state_lock:
            return list(self._mounted.values())

    def state_of(self, volume: Volume) -> VolumeState:
        with self._state_lock:
            return self._states.get(volume.provider_id, VolumeState.UNATTACHED)

    def _advance(self, volume: Volume, new_state: VolumeState) -> None:
        """Record progress; states never move backwards."""
        with self._state_lock:
            old_state = self._states.get(volume.provider_id, VolumeState.UNATTACHED)
            if new_state.value <= old_state.value:
                return
            self._states[volume.provider_id] = new_state
        logger.debug(f"Volume {volume.provider_id}: {old_state.name} -> {new_state.name}")

    def _wait_interruptible(self, seconds: float) -> bool:
        """Wait for specified seconds, or until stop event.

        Returns:
            True if wait completed, False if interrupted by stop
        """
        if self.config.stop_event is None:
            time.sleep(seconds)
            return True
        return not self.config.stop_event.wait(timeout=seconds)

    def attach_volumes(self) -> list[Volume]:
        """Make sure this host has a volume attached.

        Returns:
            Volumes attached to this host (normally zero or one)

        Raises:
            ProviderError: If the volumes cannot be listed
            AttachContractError: If the provider broke the attach contract
        """
        volumes = self.provider.find_volumes()

        try_attach: list[Volume] = []
        attached: list[Volume] = []
        for v in volumes:
            if not v.attached_to:
                try_attach.append(v)
            if v.local_device:
                attached.append(v)
                self._advance(v, VolumeState.ATTACHED)

        if not try_attach:
            return attached

        for v in try_attach:
            if attached:
                # A host that already owns a volume never seeks another
                break

            logger.info(f"Trying to attach volume {v.provider_id!r}")
            try:
                self.provider.attach_volume(v)
            except AttachError as e:
                # We are racing with other hosts here; this can happen
                logger.warning(f"Error attaching volume {v.provider_id!r}: {e}")
                continue

            if not v.local_device:
                logger.critical(f"attach_volume did not set local_device for {v.provider_id!r}")
                raise AttachContractError(
                    f"Provider attached volume {v.provider_id!r} without reporting a device"
                )
            self._advance(v, VolumeState.ATTACHED)
            attached.append(v)

        logger.info(f"Currently attached volumes: {[v.provider_id for v in attached]}")
        return attached

    def wait_for_device(self, volume: Volume) -> str:
        """Block until the provider reports the volume's device path.

        There is no attempt limit; only the stop event ends the wait early.

        Raises:
            VolumeMountError: If the provider fails while looking the device up
            WaitCancelledError: If the stop event is set
        """
        while True:
            try:
                device = self.provider.find_mounted_volume(volume)
            except ProviderError as e:
                raise VolumeMountError(
                    f"Error locating device for volume {volume.provider_id!r}: {e}"
                ) from e

            if device:
                logger.info(f"Found volume {volume.provider_id!r} at device {device!r}")
                self._advance(volume, VolumeState.DEVICE_FOUND)
                return device

            logger.info(f"Waiting for volume {volume.provider_id!r} to be mounted")
            if not self._wait_interruptible(self.config.poll_interval):
                raise WaitCancelledError(
                    f"Stopped while waiting for the device of volume {volume.provider_id!r}"
                )

    def mountpoint_for(self, volume: Volume) -> Path:
        """Derive the host mount target for a volume.

        Raises:
            FilesystemError: If the disks directory cannot be checked
        """
        disks_dir = self.config.disks_dir
        if self.fs.exists(self.paths.view(disks_dir, PathView.LOCAL)):
            return disks_dir / volume.mount_name
        return self.config.mount_root / volume.mount_name

    def safe_format_and_mount(self, volume: Volume, mountpoint: Path, fstype: str = "") -> None:
        """Wait for the device, then mount it at mountpoint unless already mounted.

        Args:
            volume: An attached volume
            mountpoint: Host path of the mount target
            fstype: Filesystem type ("" = detect)

        Raises:
            VolumeMountError: If mounting fails (AmbiguousMountError and
                DeviceMismatchError for inconsistent existing mounts)
            WaitCancelledError: If the device wait was cancelled
        """
        device = self.wait_for_device(volume)
        target = str(self.paths.view(mountpoint, PathView.HOST))

        try:
            mounts = self.mounter.list_mounts()
        except MountError as e:
            raise VolumeMountError(f"Error listing existing mounts: {e}") from e

        # The host mounter lists host mounts, so compare against the host path
        existing = [m for m in mounts if m.path == target]
        for m in existing:
            logger.debug(f"Found existing mount: {m}")

        if not existing:
            local_dir = self.paths.view(mountpoint, PathView.LOCAL)
            logger.info(f"Creating mount directory {local_dir}")
            try:
                self.fs.mkdir(local_dir, parents=True, exist_ok=True, mode=self.config.dir_mode)
            except FilesystemError as e:
                raise VolumeMountError(f"Error creating mount directory {local_dir}: {e}") from e

            logger.info(f"Mounting device {device!r} on {target!r}")
            try:
                self.mounter.format_and_mount(device, target, fstype, [])
            except MountError as e:
                raise VolumeMountError(
                    f"Error formatting and mounting disk {device!r} on {target!r}: {e}"
                ) from e
        elif len(existing) > 1:
            logger.info("Existing mounts unexpected")
            for m in mounts:
                logger.info(f"{m.device}\t{m.path}")
            raise AmbiguousMountError(
                f"Found multiple existing mounts of {device!r} at {target!r}"
            )
        else:
            logger.info(f"Found existing mount of {existing[0].device!r} at {target!r}")

        self._advance(volume, VolumeState.MOUNTED)

        if self.containerized:
            self.bridge_mount(volume, device, mountpoint, fstype)

    def bridge_mount(self, volume: Volume, device: str, mountpoint: Path, fstype: str = "") -> None:
        """Mount a host-mounted device again inside our own namespace.

        The target may already carry the device under either its host path
        (/dev/X) or its translated path (/rootfs/dev/X); both count.

        Raises:
            DeviceMismatchError: If another device is mounted at the target
            VolumeMountError: If the lookup or the mount fails
        """
        source = str(self.paths.view(device, PathView.LOCAL))
        target = str(self.paths.view(mountpoint, PathView.LOCAL))

        try:
            mounted_device = self.local_mounter.resolve_mounted_device(target)
        except MountError as e:
            raise VolumeMountError(f"Error checking for mounts of {target} inside container: {e}") from e

        if mounted_device:
            if mounted_device not in (source, device):
                raise DeviceMismatchError(
                    f"Device already mounted at {target}, but is {mounted_device} "
                    f"and we want {source} or {device}"
                )
            logger.debug(f"{target} already mounted inside container from {mounted_device}")
        else:
            logger.info(f"Mounting inside container: {source} -> {target}")
            try:
                self.local_mounter.mount(source, target, fstype, [])
            except MountError as e:
                raise VolumeMountError(
                    f"Error mounting {source} inside container at {target}: {e}"
                ) from e

        self._advance(volume, VolumeState.BRIDGED)

    def mount_volumes(self) -> list[Volume]:
        """Attach and mount a volume, if this host does not have one yet.

        Volumes that fail to mount are logged and skipped; they are not
        retried within the same call.

        Returns:
            Volumes mounted by this controller (possibly empty)

        Raises:
            ProviderError: If attaching failed for reasons other than a race
            AttachContractError: If the provider broke the attach contract
            WaitCancelledError: If a device wait was cancelled
        """
        with self._run_lock:
            try:
                attached = self.attach_volumes()
            except ProviderError as e:
                raise ProviderError(f"Unable to attach volumes: {e}") from e

            for v in attached:
                with self._state_lock:
                    if self._mounted:
                        # We only mount a single volume
                        break
                    if v.provider_id in self._mounted:
                        continue

                logger.info(f"Volume {v.provider_id!r} is attached at {v.local_device!r}")

                mountpoint = self.mountpoint_for(v)
                logger.info(f"Doing safe-format-and-mount of {v.local_device} to {mountpoint}")
                try:
                    self.safe_format_and_mount(v, mountpoint, self.config.fstype)
                except VolumeMountError as e:
                    logger.warning(f"Unable to mount volume {v.provider_id!r}: {e}")
                    continue

                logger.info(f"Mounted volume {v.provider_id!r} on {mountpoint}")
                v.mountpoint = str(self.paths.view(mountpoint, PathView.LOCAL))
                with self._state_lock:
                    self._mounted[v.provider_id] = v

            return self.mounted_volumes
