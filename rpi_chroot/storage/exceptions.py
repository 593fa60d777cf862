"""Custom exceptions for chroot provisioning and lifecycle operations.

Exception Hierarchy:
    ChrootError (base)
        ├── TransferError
        ├── ArchiveFormatError
        ├── ImageError
        │   ├── ImageNotFoundError
        │   └── AmbiguousImageError
        ├── PrivilegeError
        ├── DependencyError
        │   ├── DependencyInstallError
        │   ├── VersionError
        │   └── PackageError
        ├── LoopBindError
        ├── MountError
        │   ├── MountFailedError
        │   ├── UnmountFailedError
        │   └── MountVerificationError
        ├── ResizeError
        ├── DeviceBusyError
        └── CommandError

Usage:
    from rpi_chroot.storage.exceptions import AmbiguousImageError

    if len(matches) > 1:
        raise AmbiguousImageError(directory, matches)
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class ChrootError(Exception):
    """Base exception for all chroot operations."""


class CommandError(ChrootError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({' '.join(self.command)}) with exit code {returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


class TransferError(ChrootError):
    """Download failed: host unreachable, timeout or bad response."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to download {url}: {reason}")


class ArchiveFormatError(ChrootError):
    """Archive does not contain a disk image."""

    def __init__(self, archive: Path | str, reason: str = "no disk image member found"):
        self.archive = str(archive)
        self.reason = reason
        super().__init__(f"Invalid image archive {archive}: {reason}")


class ImageError(ChrootError):
    """Base exception for image resolution errors."""


class ImageNotFoundError(ImageError):
    """No image matching the installation pattern exists."""

    def __init__(self, directory: Path | str, pattern: str):
        self.directory = str(directory)
        self.pattern = pattern
        super().__init__(f"No image matching {pattern} in {directory}")


class AmbiguousImageError(ImageError):
    """More than one image matches the installation pattern."""

    def __init__(self, directory: Path | str, matches: Sequence[Path]):
        self.directory = str(directory)
        self.matches = [str(match) for match in matches]
        super().__init__(
            f"Multiple images in {directory}: {', '.join(self.matches)}"
        )


class PrivilegeError(ChrootError):
    """Operation requires root privileges."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} must be run as root")


class DependencyError(ChrootError):
    """Base exception for host dependency errors."""


class DependencyInstallError(DependencyError):
    """A required host package could not be installed."""

    def __init__(self, package: str, reason: str):
        self.package = package
        self.reason = reason
        super().__init__(f"Failed to install {package}: {reason}")


class VersionError(DependencyError):
    """An installed tool is older than the required minimum."""

    def __init__(self, tool: str, found: str, required: str):
        self.tool = tool
        self.found = found
        self.required = required
        super().__init__(f"{tool} version {found} is older than required {required}")


class PackageError(DependencyError):
    """Package manager invocation failed."""

    def __init__(self, packages: Sequence[str], reason: str):
        self.packages = list(packages)
        self.reason = reason
        super().__init__(f"Failed to install packages {' '.join(self.packages)}: {reason}")


class LoopBindError(ChrootError):
    """Failed to attach an image to a loop device."""

    def __init__(self, image: Path | str, reason: str):
        self.image = str(image)
        self.reason = reason
        super().__init__(f"Failed to bind {image} to a loop device: {reason}")


class MountError(ChrootError):
    """Base exception for mount-related errors."""


class MountFailedError(MountError):
    """A mount step failed."""

    def __init__(self, source: str, target: Path | str, reason: str):
        self.source = source
        self.target = str(target)
        self.reason = reason
        super().__init__(f"Failed to mount {source} at {target}: {reason}")


class UnmountFailedError(MountError):
    """Failed to unmount the chroot tree."""

    def __init__(self, target: Path | str, reason: str):
        self.target = str(target)
        self.reason = reason
        super().__init__(f"Failed to unmount {target}: {reason}")


class MountVerificationError(MountError):
    """Mount points remain under the chroot after unmount."""

    def __init__(self, target: Path | str, mountpoints: Sequence[str]):
        self.target = str(target)
        self.mountpoints = list(mountpoints)
        super().__init__(
            f"{target} still has active mountpoints after unmount: "
            f"{', '.join(self.mountpoints)}"
        )


class ResizeError(ChrootError):
    """Partition or filesystem growth failed."""

    def __init__(self, image: Path | str, stage: str, reason: str):
        self.image = str(image)
        self.stage = stage
        self.reason = reason
        super().__init__(f"Resize of {image} failed during {stage}: {reason}")


class DeviceBusyError(ChrootError):
    """Installation is mounted and cannot be modified."""

    def __init__(self, target: Path | str, reason: str = ""):
        self.target = str(target)
        self.reason = reason
        msg = f"{target} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
