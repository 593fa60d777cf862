"""
Pytest configuration and shared fixtures for rpi-chroot tests.

No test touches real loop devices, mounts or the network: every external
command goes through mocked ``run_command``/``subprocess`` calls.
"""

import json
import subprocess
import zipfile
from pathlib import Path
from typing import Dict
from unittest.mock import Mock

import pytest

from rpi_chroot.domain import ChrootInstallation, DiskImage, parse_env_rules
from rpi_chroot.storage.state import StateStore


# ==============================================================================
# Installation Fixtures
# ==============================================================================


@pytest.fixture
def installation(tmp_path) -> ChrootInstallation:
    """Fixture providing an installation rooted in a temporary directory."""
    root = tmp_path / "pi"
    root.mkdir()
    return ChrootInstallation(
        root=root,
        arch="armhf",
        image_source="https://example.invalid/raspbian.zip",
        packages=("build-essential",),
        env_rules=parse_env_rules("ARCH"),
        scratch_dir=tmp_path / "scratch",
    )


@pytest.fixture
def store(installation) -> StateStore:
    """Fixture providing the installation's state store."""
    return StateStore(installation.state_path, installation.root)


@pytest.fixture
def disk_image(installation) -> DiskImage:
    """Fixture providing a small image file in the installation directory."""
    path = installation.root / "2020-02-13-raspbian-buster-lite.img"
    path.write_bytes(b"\0" * 4096)
    return DiskImage(path=path)


@pytest.fixture
def image_zip(tmp_path) -> Path:
    """Fixture providing a zip archive holding one disk image."""
    archive = tmp_path / "raspbian.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("2020-02-13-raspbian-buster-lite.img", b"\0" * 2048)
        bundle.writestr("README.txt", "readme")
    return archive


# ==============================================================================
# Command Mock Fixtures
# ==============================================================================


@pytest.fixture
def completed():
    """Fixture returning a CompletedProcess builder for mocked commands."""

    def build(command=None, returncode: int = 0, stdout: str = "", stderr: str = ""):
        return subprocess.CompletedProcess(
            command or [], returncode, stdout=stdout, stderr=stderr
        )

    return build


@pytest.fixture
def losetup_json():
    """Fixture returning a builder for ``losetup --list --json`` output."""

    def build(entries: Dict[str, str]) -> str:
        return json.dumps(
            {
                "loopdevices": [
                    {"name": name, "back-file": back_file}
                    for name, back_file in entries.items()
                ]
            }
        )

    return build


@pytest.fixture
def mock_binder() -> Mock:
    """Fixture providing a LoopBinder stand-in."""
    from rpi_chroot.domain import LoopBinding

    binder = Mock()
    binder.bind.return_value = LoopBinding(device="/dev/loop7")
    binder.current.return_value = LoopBinding(device="/dev/loop7")
    binder.detach_fallback.return_value = 0
    binder.release.return_value = 0
    return binder
