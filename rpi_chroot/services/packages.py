"""Package installation on the host and inside the guest."""

from __future__ import annotations

import os
from typing import Sequence

from rpi_chroot.domain import ChrootInstallation
from rpi_chroot.logging import LoggerFactory
from rpi_chroot.storage.commands import run_command
from rpi_chroot.storage.exceptions import CommandError, PackageError


log = LoggerFactory.for_system()

APT_GET = "apt-get"


def _apt_env() -> dict[str, str]:
    env = dict(os.environ)
    env["DEBIAN_FRONTEND"] = "noninteractive"
    return env


def install_packages(names: Sequence[str]) -> None:
    """Install host packages with apt-get.

    Raises:
        PackageError: apt-get failed
    """
    names = list(names)
    if not names:
        return
    log.info(f"Installing host packages: {' '.join(names)}")
    try:
        run_command([APT_GET, "install", "-y", *names], env=_apt_env())
    except CommandError as exc:
        raise PackageError(names, exc.stderr or str(exc)) from exc


def install_guest_packages(installation: ChrootInstallation, names: Sequence[str]) -> None:
    """Install packages inside the mounted guest as root.

    Raises:
        PackageError: apt-get failed inside the chroot
    """
    names = list(names)
    if not names:
        return
    mnt = str(installation.mount_root)
    log.info(f"Installing guest packages: {' '.join(names)}")
    env = _apt_env()
    try:
        run_command(["chroot", mnt, APT_GET, "update"], env=env)
        run_command(["chroot", mnt, APT_GET, "install", "-y", *names], env=env)
    except CommandError as exc:
        raise PackageError(names, exc.stderr or str(exc)) from exc
