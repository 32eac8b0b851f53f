"""Fixtures for integration tests.

These tests need root, loop device support and e2fsprogs. Run them in a
privileged container, e.g.:

    docker run --privileged -v $PWD:/src -w /src python:3.12 \\
        sh -c "pip install -e .[test] && pytest tests/integration"

They are skipped everywhere else.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

import pytest

pytestmark = pytest.mark.integration


@dataclass
class LoopDisk:
    """A blank disk backed by a sparse image file."""

    image: Path
    device: str


def _require_tools() -> None:
    if os.geteuid() != 0:
        pytest.skip("integration tests require root")
    for tool in ("losetup", "blkid", "mkfs.ext4", "mount", "umount"):
        if shutil.which(tool) is None:
            pytest.skip(f"{tool} not available")


@pytest.fixture
def loop_disk(tmp_path: Path) -> Generator[LoopDisk, None, None]:
    """Create a 64 MiB blank disk attached to a loop device."""
    _require_tools()

    image = tmp_path / "disk.img"
    subprocess.run(["truncate", "-s", "64M", str(image)], check=True)

    result = subprocess.run(
        ["losetup", "-f", "--show", str(image)], capture_output=True, text=True
    )
    if result.returncode != 0:
        pytest.skip(f"losetup failed: {result.stderr.strip()}")
    device = result.stdout.strip()

    try:
        yield LoopDisk(image=image, device=device)
    finally:
        # Unmount everything that uses the device before detaching it
        with open("/proc/self/mounts") as f:
            targets = [line.split()[1] for line in f if line.split()[0] == device]
        for target in reversed(targets):
            subprocess.run(["umount", target], capture_output=True)
        subprocess.run(["losetup", "-d", device], capture_output=True)
