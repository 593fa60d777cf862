"""Chroot mount tree setup and teardown.

Mount order under ``<root>/mnt``:
    1. root partition (``<loop>p2``) at mnt
    2. boot partition (``<loop>p1``) at mnt/boot
    3. proc at mnt/proc
    4. host /sys recursively bound at mnt/sys, made rprivate
    5. host /dev recursively bound at mnt/dev, made rprivate
    6. host shared memory runtime directory (only when /dev/shm is a
       symlink, e.g. to /run/shm) bound at the same guest path, made private

Afterwards the host resolver configuration is copied into the guest.

Every step checks the live mount table first, so calling ``mount`` on an
already (or partially) mounted installation only fills in what is missing.
Teardown is a single recursive, forced umount that also releases the loop
device, followed by a check that nothing is left mounted.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import psutil

from rpi_chroot.domain import (
    ChrootInstallation,
    DiskImage,
    LoopBinding,
    MountSpec,
    MountTree,
)
from rpi_chroot.logging import LoggerFactory
from rpi_chroot.storage.commands import run_command
from rpi_chroot.storage.exceptions import (
    CommandError,
    MountFailedError,
    MountVerificationError,
    UnmountFailedError,
)
from rpi_chroot.storage.loop import LoopBinder


log = LoggerFactory.for_mount()

HOST_RESOLV_CONF = Path("/etc/resolv.conf")
HOST_SHM = Path("/dev/shm")


def mounted_paths() -> set[str]:
    """All mount points in the current mount namespace."""
    return {partition.mountpoint for partition in psutil.disk_partitions(all=True)}


def is_mounted(path: Path | str) -> bool:
    return os.path.normpath(str(path)) in mounted_paths()


def mounts_under(root: Path | str) -> list[str]:
    """Mount points at or below ``root``, deepest first."""
    root = os.path.normpath(str(root))
    prefix = root.rstrip("/") + "/"
    found = [
        path for path in mounted_paths() if path == root or path.startswith(prefix)
    ]
    return sorted(found, key=lambda path: (path.count("/"), path), reverse=True)


def shm_runtime_dir(shm_path: Path = HOST_SHM) -> Path | None:
    """Runtime directory /dev/shm links to, or None when it is a plain dir."""
    if not shm_path.is_symlink():
        return None
    return Path(os.path.realpath(shm_path))


def build_mount_tree(
    installation: ChrootInstallation,
    binding: LoopBinding,
    *,
    shm_path: Path = HOST_SHM,
) -> MountTree:
    """Ordered mount steps for ``installation`` on ``binding``."""
    mnt = installation.mount_root
    specs = [
        MountSpec(source=binding.root_partition, target=mnt, options=("rw",)),
        MountSpec(source=binding.boot_partition, target=mnt / "boot"),
        MountSpec(source="proc", target=mnt / "proc", fstype="proc"),
        MountSpec(
            source="/sys", target=mnt / "sys", bind=True, recursive=True, private=True
        ),
        MountSpec(
            source="/dev", target=mnt / "dev", bind=True, recursive=True, private=True
        ),
    ]
    runtime_shm = shm_runtime_dir(shm_path)
    if runtime_shm is not None:
        specs.append(
            MountSpec(
                source=str(runtime_shm),
                target=installation.guest_path(runtime_shm),
                bind=True,
                private=True,
            )
        )
    return MountTree(specs=tuple(specs))


class MountOrchestrator:
    """Mount and unmount the chroot tree of an installation."""

    def __init__(
        self,
        binder: LoopBinder,
        *,
        resolv_conf: Path = HOST_RESOLV_CONF,
        shm_path: Path = HOST_SHM,
    ):
        self.binder = binder
        self.resolv_conf = resolv_conf
        self.shm_path = shm_path

    def status(
        self, installation: ChrootInstallation, binding: LoopBinding | None = None
    ) -> dict[Path, bool]:
        """Mounted/unmounted flag per mount target."""
        binding = binding or self.binder.current() or LoopBinding(device="-")
        tree = build_mount_tree(installation, binding, shm_path=self.shm_path)
        active = mounted_paths()
        return {
            target: os.path.normpath(str(target)) in active for target in tree.targets
        }

    def mount(self, installation: ChrootInstallation, image: DiskImage) -> LoopBinding:
        """Bind the image if needed and mount the full tree.

        Raises:
            LoopBindError: Image could not be attached
            MountFailedError: A mount step failed
        """
        binding = self.binder.bind(image)
        tree = build_mount_tree(installation, binding, shm_path=self.shm_path)
        for spec in tree:
            self._apply(spec)
        self.copy_resolv_conf(installation)
        log.success(f"Mounted {installation.mount_root}")
        return binding

    def _apply(self, spec: MountSpec) -> None:
        if is_mounted(spec.target):
            log.debug(f"{spec.target} already mounted, skipping")
            return
        spec.target.mkdir(parents=True, exist_ok=True)
        try:
            run_command(spec.mount_command())
            propagation = spec.propagation_command()
            if propagation:
                run_command(propagation)
        except CommandError as exc:
            raise MountFailedError(spec.source, spec.target, exc.stderr or str(exc)) from exc
        log.info(f"Mounted {spec.source} at {spec.target}")

    def copy_resolv_conf(self, installation: ChrootInstallation) -> None:
        if not self.resolv_conf.exists():
            log.warning(f"{self.resolv_conf} not found, guest DNS left unchanged")
            return
        target = installation.guest_path("/etc/resolv.conf")
        target.parent.mkdir(parents=True, exist_ok=True)
        # Guest images often ship resolv.conf as a symlink into /run.
        if target.is_symlink() or target.exists():
            target.unlink()
        shutil.copyfile(self.resolv_conf, target)
        log.debug(f"Copied {self.resolv_conf} to {target}")

    def unmount(self, installation: ChrootInstallation, image: Path | None) -> int:
        """Tear down the tree and release the loop device.

        Returns:
            0 on a recorded binding, otherwise the fallback detach status

        Raises:
            UnmountFailedError: umount failed
            MountVerificationError: Mount points remain afterwards
        """
        mnt = installation.mount_root
        if self.binder.current() is not None and is_mounted(mnt):
            try:
                run_command(
                    [
                        "umount",
                        "--all-targets",
                        "--recursive",
                        "--force",
                        "--detach-loop",
                        str(mnt),
                    ]
                )
            except CommandError as exc:
                raise UnmountFailedError(mnt, exc.stderr or str(exc)) from exc
        self._unmount_leftovers(mnt)
        status = self.binder.release(image)

        remaining = mounts_under(mnt)
        if remaining:
            raise MountVerificationError(mnt, remaining)
        log.success(f"Unmounted {mnt}")
        return status

    def _unmount_leftovers(self, mnt: Path) -> None:
        """Unmount anything still below ``mnt``, deepest first."""
        for path in mounts_under(mnt):
            if not is_mounted(path):
                continue
            log.info(f"Unmounting leftover mount {path}")
            result = run_command(["umount", "--recursive", "--force", path], check=False)
            if result.returncode != 0:
                log.warning(f"umount {path} exited with {result.returncode}")
