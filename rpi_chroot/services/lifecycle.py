"""Chroot installation lifecycle.

ChrootManager ties the storage layer together for one installation:

    install: acquire image -> pad + grow (first run) -> mount -> emulation
             -> guest packages -> management utility
    addsize: pad + grow an unmounted installation
    mount / umount / enter: day-to-day use through the management utility

Every mutating operation requires root and stops at the first failure.
Re-running ``install`` is the supported recovery path: image acquisition,
loop binding and mounting all reuse what is already in place.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence

from rpi_chroot.domain import ChrootInstallation, DetachPolicy, DiskImage, ResizeStage
from rpi_chroot.logging import LoggerFactory, operation_context
from rpi_chroot.services import packages, shell, utility
from rpi_chroot.services.emulation import EmulationSetup, host_arch
from rpi_chroot.storage import image as image_provider
from rpi_chroot.storage.commands import require_root
from rpi_chroot.storage.exceptions import DeviceBusyError, ImageError
from rpi_chroot.storage.image import Fetcher
from rpi_chroot.storage.loop import LoopBinder
from rpi_chroot.storage.mount import MountOrchestrator, mounts_under
from rpi_chroot.storage.resize import PartitionResizer
from rpi_chroot.storage.state import StateStore


log = LoggerFactory.for_system()


class ChrootManager:
    """Provision and operate a single chroot installation."""

    def __init__(
        self,
        installation: ChrootInstallation,
        *,
        store: StateStore | None = None,
        policy: DetachPolicy = DetachPolicy.SCOPED,
        fetcher: Fetcher | None = None,
        emulation: EmulationSetup | None = None,
        mounter: MountOrchestrator | None = None,
    ):
        self.installation = installation
        self.store = store or StateStore(installation.state_path, installation.root)
        self.binder = LoopBinder(self.store, policy)
        self.resizer = PartitionResizer(self.binder, self.store)
        self.mounter = mounter or MountOrchestrator(self.binder)
        self.emulation = emulation or EmulationSetup()
        self.fetcher = fetcher

    def image(self) -> DiskImage:
        return image_provider.resolve(
            self.installation.root, self.installation.image_pattern
        )

    def is_mounted(self) -> bool:
        return bool(mounts_under(self.installation.mount_root))

    def install(self) -> Path:
        """Provision the installation end to end.

        Returns:
            Path of the generated management utility
        """
        require_root("Installation")
        inst = self.installation
        with operation_context("install", root=str(inst.root), arch=inst.arch):
            inst.root.mkdir(parents=True, exist_ok=True)
            disk = image_provider.acquire(
                inst.image_source,
                inst.root,
                pattern=inst.image_pattern,
                scratch_dir=inst.scratch_dir,
                fetcher=self.fetcher,
            )
            stage = self.store.get_resize_stage()
            if inst.add_size_mb > 0 and stage is not ResizeStage.FILESYSTEM_GROWN:
                if self.is_mounted():
                    log.warning("Installation already mounted, skipping resize")
                elif not self.resizer.resume(disk):
                    self.resizer.grow(disk, inst.add_size_mb)
            self.mounter.mount(inst, disk)
            self.emulation.ensure(inst.arch, host_arch(), inst.mount_root)
            packages.install_guest_packages(inst, inst.packages)
            return utility.write_utility(inst)

    def addsize(self, megabytes: int) -> None:
        """Pad the image and grow its root filesystem by ``megabytes`` MiB.

        A resize interrupted earlier is finished before the new space is added.

        Raises:
            DeviceBusyError: The installation is mounted
        """
        require_root("Resizing")
        if megabytes <= 0:
            raise ValueError("Size to add must be a positive number of megabytes")
        with operation_context("addsize", root=str(self.installation.root), megabytes=megabytes):
            if self.is_mounted():
                raise DeviceBusyError(
                    self.installation.mount_root, "unmount before resizing"
                )
            self.resizer.grow(self.image(), megabytes)

    def mount(self) -> None:
        require_root("Mounting")
        with operation_context("mount", root=str(self.installation.root)):
            self.mounter.mount(self.installation, self.image())

    def umount(self) -> int:
        """Unmount the tree; returns the fallback detach status when used."""
        require_root("Unmounting")
        with operation_context("umount", root=str(self.installation.root)):
            try:
                image_path = self.image().path
            except ImageError as exc:
                log.warning(f"Image not resolvable, scoped detach disabled: {exc}")
                image_path = None
            return self.mounter.unmount(self.installation, image_path)

    def status(self) -> dict[Path, bool]:
        return self.mounter.status(self.installation)

    def enter(
        self,
        user: str | None = None,
        command: Sequence[str] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> int:
        return shell.enter(
            self.installation,
            user or self.installation.user,
            command,
            environ=environ,
        )
