"""Cross-architecture emulation for the guest.

When the guest architecture differs from the host, foreign binaries run
through a static qemu user-mode emulator registered with the kernel's
binfmt_misc handler. The emulator is copied into the guest so that the
registered interpreter path resolves inside the chroot.
"""

from __future__ import annotations

import platform
import re
import shutil
from pathlib import Path
from typing import Callable, Sequence

from rpi_chroot.logging import LoggerFactory
from rpi_chroot.services import packages
from rpi_chroot.storage.commands import run_command
from rpi_chroot.storage.exceptions import (
    CommandError,
    DependencyInstallError,
    PackageError,
    VersionError,
)


log = LoggerFactory.for_emulation()

QEMU_PACKAGE = "qemu-user-static"
BINFMT_PACKAGE = "binfmt-support"
MIN_QEMU_VERSION = (2, 12, 0)
BINFMT_DIR = Path("/proc/sys/fs/binfmt_misc")
HOST_BIN_DIR = Path("/usr/bin")
GUEST_PRELOAD = "etc/ld.so.preload"

ARCH_ALIASES = {
    "arm": "arm",
    "armel": "arm",
    "armhf": "arm",
    "armv6l": "arm",
    "armv7l": "arm",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "i386": "i386",
    "i686": "i386",
}

_VERSION_RE = re.compile(r"version (\d+(?:\.\d+)*)")

Installer = Callable[[Sequence[str]], None]


def normalize_arch(arch: str) -> str:
    """Map Debian/kernel architecture names to qemu names (armhf -> arm)."""
    arch = arch.strip().lower()
    return ARCH_ALIASES.get(arch, arch)


def host_arch() -> str:
    return platform.machine()


def format_version(version: Sequence[int]) -> str:
    return ".".join(str(part) for part in version)


def parse_version(output: str) -> tuple[int, ...] | None:
    match = _VERSION_RE.search(output)
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


class EmulationSetup:
    """Install and wire up qemu for a foreign guest architecture."""

    def __init__(
        self,
        *,
        installer: Installer | None = None,
        min_version: tuple[int, ...] = MIN_QEMU_VERSION,
        bin_dir: Path = HOST_BIN_DIR,
        binfmt_dir: Path = BINFMT_DIR,
    ):
        self.installer = installer or packages.install_packages
        self.min_version = min_version
        self.bin_dir = bin_dir
        self.binfmt_dir = binfmt_dir

    def emulator_path(self, arch: str) -> Path:
        return self.bin_dir / f"qemu-{normalize_arch(arch)}-static"

    def emulator_version(self, path: Path) -> tuple[int, ...] | None:
        result = run_command([str(path), "--version"], check=False)
        return parse_version(result.stdout or "")

    def ensure(self, target_arch: str, host: str, guest_root: Path) -> Path | None:
        """Make ``target_arch`` binaries runnable inside ``guest_root``.

        Returns:
            Path of the emulator inside the guest, or None when no
            emulation is needed

        Raises:
            DependencyInstallError: qemu could not be installed
            VersionError: Installed qemu is older than the minimum
        """
        arch = normalize_arch(target_arch)
        if arch == normalize_arch(host):
            log.debug(f"Guest architecture {target_arch} matches host, no emulation")
            return None

        emulator = self.emulator_path(arch)
        if not emulator.exists():
            self._install_emulator(emulator)
        else:
            self._check_version(emulator, installed=False)

        self.register_binfmt(arch)
        guest_emulator = self.copy_emulator(emulator, guest_root)
        self.remove_preload(guest_root)
        log.success(f"Emulation for {arch} ready in {guest_root}")
        return guest_emulator

    def _install_emulator(self, emulator: Path) -> None:
        log.info(f"{emulator} missing, installing {QEMU_PACKAGE}")
        try:
            self.installer([QEMU_PACKAGE])
        except PackageError as exc:
            raise DependencyInstallError(QEMU_PACKAGE, exc.reason) from exc
        if not emulator.exists():
            raise DependencyInstallError(QEMU_PACKAGE, f"{emulator} still missing")
        self._check_version(emulator, installed=True)

    def _check_version(self, emulator: Path, *, installed: bool) -> None:
        version = self.emulator_version(emulator)
        if version is None:
            log.warning(f"Could not determine {emulator.name} version")
            return
        if version >= self.min_version:
            log.debug(f"{emulator.name} version {format_version(version)}")
            return
        found = format_version(version)
        required = format_version(self.min_version)
        if installed:
            raise DependencyInstallError(
                QEMU_PACKAGE,
                f"installed version {found} is older than required {required}",
            )
        raise VersionError(emulator.name, found, required)

    def is_registered(self, arch: str) -> bool:
        return (self.binfmt_dir / f"qemu-{normalize_arch(arch)}").exists()

    def register_binfmt(self, arch: str) -> None:
        arch = normalize_arch(arch)
        if self.is_registered(arch):
            log.debug(f"binfmt handler qemu-{arch} already registered")
            return
        if not shutil.which("update-binfmts"):
            log.info(f"update-binfmts missing, installing {BINFMT_PACKAGE}")
            try:
                self.installer([BINFMT_PACKAGE])
            except PackageError as exc:
                raise DependencyInstallError(BINFMT_PACKAGE, exc.reason) from exc
        try:
            run_command(["update-binfmts", "--enable", f"qemu-{arch}"])
        except CommandError as exc:
            raise DependencyInstallError(BINFMT_PACKAGE, exc.stderr or str(exc)) from exc
        log.info(f"Registered binfmt handler qemu-{arch}")

    def copy_emulator(self, emulator: Path, guest_root: Path) -> Path:
        target = guest_root / "usr" / "bin" / emulator.name
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(emulator, target)
        log.info(f"Copied {emulator} to {target}")
        return target

    def remove_preload(self, guest_root: Path) -> None:
        preload = guest_root / GUEST_PRELOAD
        if preload.exists() or preload.is_symlink():
            preload.unlink()
            log.info(f"Removed {preload}")
