"""Pytest fixtures for volmount tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from volmount.controller import ControllerConfig, VolumeMountController
from volmount.filesystem import MockFilesystem
from volmount.mount import MockMounter
from volmount.paths import IdentityPathTranslator, RootfsPathTranslator
from volmount.volume import MockVolumeProvider, Volume


@pytest.fixture
def mock_fs() -> MockFilesystem:
    """Create a mock filesystem with a host-style layout."""
    fs = MockFilesystem()
    fs.mkdir(Path("/mnt"), parents=True)
    fs.mkdir(Path("/dev/disk/by-id"), parents=True)
    return fs


@pytest.fixture
def volumes() -> list[Volume]:
    """Three unattached candidates competing for the same mount name."""
    return [
        Volume(provider_id="vol-a", mount_name="master-data"),
        Volume(provider_id="vol-b", mount_name="master-data"),
        Volume(provider_id="vol-c", mount_name="master-data"),
    ]


@pytest.fixture
def mock_provider(volumes: list[Volume]) -> MockVolumeProvider:
    """Create a mock provider over the candidate volumes."""
    return MockVolumeProvider(volumes=volumes)


@pytest.fixture
def mock_mounter() -> MockMounter:
    """Create a mock host mounter with an empty mount table."""
    return MockMounter()


@pytest.fixture
def controller(
    mock_provider: MockVolumeProvider,
    mock_mounter: MockMounter,
    mock_fs: MockFilesystem,
) -> VolumeMountController:
    """Create a host-mode controller with mock components."""
    return VolumeMountController(
        provider=mock_provider,
        mounter=mock_mounter,
        paths=IdentityPathTranslator(),
        fs=mock_fs,
        config=ControllerConfig(poll_interval=0),
    )


@pytest.fixture
def container_fs() -> MockFilesystem:
    """Create a mock container filesystem with the host root at /rootfs."""
    fs = MockFilesystem()
    fs.mkdir(Path("/rootfs/mnt"), parents=True)
    fs.mkdir(Path("/rootfs/dev/disk/by-id"), parents=True)
    return fs


@pytest.fixture
def local_mounter() -> MockMounter:
    """Create a mock mounter for the container's own namespace."""
    return MockMounter()


@pytest.fixture
def containerized_controller(
    mock_provider: MockVolumeProvider,
    mock_mounter: MockMounter,
    container_fs: MockFilesystem,
    local_mounter: MockMounter,
) -> VolumeMountController:
    """Create a containerized controller with mock components."""
    return VolumeMountController(
        provider=mock_provider,
        mounter=mock_mounter,
        paths=RootfsPathTranslator(Path("/rootfs")),
        fs=container_fs,
        config=ControllerConfig(poll_interval=0),
        local_mounter=local_mounter,
    )
