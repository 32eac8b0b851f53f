"""Configuration handling for volmount.

This module provides:
- Config dataclass with all configuration options
- Loading from environment variables
- Loading from a shell-style config file
- Validation
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from .volume import VolumeSpec

TRUE_VALUES = ("1", "true", "yes", "on")


class ConfigError(Exception):
    """Configuration error."""


def parse_bool(value: str) -> bool:
    """Parse a boolean setting such as 'true', 'yes' or '1'."""
    value = str(value).strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"Invalid boolean value: {value}")


def parse_volumes(value: str) -> list[VolumeSpec]:
    """Parse a space-separated list of id:mount_name:device volume specs."""
    specs: list[VolumeSpec] = []
    for item in value.split():
        try:
            specs.append(VolumeSpec.parse(item))
        except ValueError as e:
            raise ConfigError(str(e)) from e
    return specs


@dataclass
class Config:
    """Main configuration for volmount."""

    # Running in a container with the host root at rootfs_path
    containerized: bool = False
    rootfs_path: Path = Path("/rootfs")

    # Mounting
    fstype: str = ""  # Empty = detect existing, ext4 for blank disks
    default_fstype: str = "ext4"
    mount_root: Path = Path("/mnt")
    disks_dir: Path = Path("/mnt/disks")

    # Timing
    poll_interval: float = 1.0  # Seconds between device lookups
    retry_interval: float = 10.0  # Seconds between mount attempts in `run`

    # Static provider
    host_id: str = field(default_factory=socket.gethostname)
    volumes: list[VolumeSpec] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Validate configuration.

        Returns:
            List of warning/error messages (empty if valid)
        """
        warnings: list[str] = []

        if self.poll_interval <= 0:
            warnings.append(f"poll_interval must be positive, got {self.poll_interval}")

        if self.retry_interval <= 0:
            warnings.append(f"retry_interval must be positive, got {self.retry_interval}")

        for name in ("rootfs_path", "mount_root", "disks_dir"):
            path = getattr(self, name)
            if not path.is_absolute():
                warnings.append(f"{name} must be an absolute path, got {path}")

        if not self.volumes:
            warnings.append("No volumes configured (VOLMOUNT_VOLUMES)")

        seen: set[str] = set()
        for spec in self.volumes:
            if spec.provider_id in seen:
                warnings.append(f"Duplicate volume id: {spec.provider_id}")
            seen.add(spec.provider_id)

        return warnings


def _load_from_dict(env: dict[str, str]) -> Config:
    """Build a Config from a string dictionary (shared by load_from_env and load_from_file).

    Args:
        env: Dictionary mapping variable names to values

    Returns:
        Config instance

    Raises:
        ConfigError: If a value cannot be parsed
    """
    config = Config(
        containerized=parse_bool(env.get("VOLMOUNT_CONTAINERIZED", "false")),
        rootfs_path=Path(env.get("VOLMOUNT_ROOTFS", "/rootfs")),
        fstype=env.get("VOLMOUNT_FSTYPE", ""),
        default_fstype=env.get("VOLMOUNT_DEFAULT_FSTYPE", "ext4"),
        mount_root=Path(env.get("VOLMOUNT_MOUNT_ROOT", "/mnt")),
        disks_dir=Path(env.get("VOLMOUNT_DISKS_DIR", "/mnt/disks")),
        volumes=parse_volumes(env.get("VOLMOUNT_VOLUMES", "")),
    )

    if host_id := env.get("VOLMOUNT_HOST_ID"):
        config.host_id = host_id

    for key, attr in (
        ("VOLMOUNT_POLL_INTERVAL", "poll_interval"),
        ("VOLMOUNT_RETRY_INTERVAL", "retry_interval"),
    ):
        if value := env.get(key):
            try:
                setattr(config, attr, float(value))
            except ValueError as e:
                raise ConfigError(f"Invalid number for {key}: {value}") from e

    return config


def load_from_env() -> Config:
    """Load configuration from environment variables.

    Reads environment variables:
    - VOLMOUNT_CONTAINERIZED, VOLMOUNT_ROOTFS
    - VOLMOUNT_FSTYPE, VOLMOUNT_DEFAULT_FSTYPE
    - VOLMOUNT_MOUNT_ROOT, VOLMOUNT_DISKS_DIR
    - VOLMOUNT_POLL_INTERVAL, VOLMOUNT_RETRY_INTERVAL
    - VOLMOUNT_HOST_ID, VOLMOUNT_VOLUMES (space-separated id:mount_name:device)

    Returns:
        Config instance
    """
    return _load_from_dict(dict(os.environ))


def load_from_file(path: Path) -> Config:
    """Load configuration from a shell-style config file.

    Parses files that use export VAR=value or VAR=value syntax.
    File values are used directly without mutating os.environ.

    Args:
        path: Path to config file

    Returns:
        Config instance
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    env_vars: dict[str, str] = {}

    with open(path) as f:
        for line in f:
            line = line.strip()

            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue

            # Handle export statements
            if line.startswith("export "):
                line = line[7:]

            # Parse VAR=value
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()

                # Remove surrounding quotes
                if len(value) >= 2 and value[0] in ("'", '"') and value[0] == value[-1]:
                    value = value[1:-1]

                env_vars[key] = value

    return _load_from_dict(env_vars)
