"""Root partition growth for padded images.

``grow`` records the padded size it aims for, pads the image, then grows the
root partition as a sequence of recorded stages:

    UNRESIZED -> PARTITION_GROWN -> CHECKED -> FILESYSTEM_GROWN

An interrupted grow is finished by ``resume``: padding to the recorded size
is idempotent and the partition steps restart after the last recorded one.

Every step is fatal on failure. The loop device is released whether the
sequence completes or not.
"""

from __future__ import annotations

from rpi_chroot.domain import DiskImage, LoopBinding, ResizeStage
from rpi_chroot.logging import LoggerFactory
from rpi_chroot.storage import image as image_provider
from rpi_chroot.storage.commands import run_command
from rpi_chroot.storage.exceptions import CommandError, ResizeError
from rpi_chroot.storage.loop import LoopBinder
from rpi_chroot.storage.state import StateStore


log = LoggerFactory.for_resize()

ROOT_PARTITION = 2
# e2fsck: 1 = errors corrected, 2 = corrected and reboot advised
E2FSCK_OK_CODES = {0, 1, 2}


class PartitionResizer:
    """Grow the root partition and its ext filesystem to fill the image."""

    def __init__(self, binder: LoopBinder, store: StateStore):
        self.binder = binder
        self.store = store

    def grow(self, image: DiskImage, add_mb: int) -> ResizeStage:
        """Pad ``image`` by ``add_mb`` MiB and grow its root filesystem into it.

        An earlier interrupted grow is finished first, so the requested space
        always comes on top of it.
        """
        self.resume(image)
        target = image.size_bytes + add_mb * image_provider.MEBIBYTE
        self.store.set_pad_target(target)
        log.info(f"Growing {image.name} by {add_mb} MiB")
        return self._complete(image, target, add_mb)

    def resume(self, image: DiskImage) -> bool:
        """Finish an interrupted grow, if the state records one.

        Returns:
            True when there was an interrupted grow to finish
        """
        target = self.store.get_pad_target()
        if target is None and not self.store.get_resize_stage().in_progress:
            return False
        log.warning(f"Finishing interrupted resize of {image.name}")
        self._complete(image, target)
        return True

    def _complete(
        self, image: DiskImage, target: int | None, add_mb: int | None = None
    ) -> ResizeStage:
        if target is not None:
            image_provider.pad_to(image, target)
        stage = self.extend(image, add_mb)
        self.store.set_pad_target(None)
        return stage

    def extend(self, image: DiskImage, add_mb: int | None = None) -> ResizeStage:
        """Grow partition 2 of ``image`` into space added by padding.

        ``add_mb`` is the padding the caller applied; it is only logged.

        Returns:
            The final stage (always FILESYSTEM_GROWN)

        Raises:
            ResizeError: A step failed; the recorded stage is left at the
                last completed step
        """
        stage = self.store.get_resize_stage()
        if stage.in_progress:
            log.warning(f"Resuming interrupted resize of {image.name} after {stage.value}")
        else:
            stage = ResizeStage.UNRESIZED
            self.store.set_resize_stage(stage)
            added = f"by {add_mb} MiB" if add_mb is not None else "to fill the image"
            log.info(f"Growing root partition of {image.name} {added}")

        binding = self.binder.bind(image)
        try:
            if stage is ResizeStage.UNRESIZED:
                self._grow_partition(image, binding)
                stage = self._advance(ResizeStage.PARTITION_GROWN)
            if stage is ResizeStage.PARTITION_GROWN:
                self._check_filesystem(image, binding)
                stage = self._advance(ResizeStage.CHECKED)
            if stage is ResizeStage.CHECKED:
                self._grow_filesystem(image, binding)
                stage = self._advance(ResizeStage.FILESYSTEM_GROWN)
        finally:
            self.binder.unbind(binding)
        log.success(f"Root filesystem of {image.name} grown")
        return stage

    def _advance(self, stage: ResizeStage) -> ResizeStage:
        self.store.set_resize_stage(stage)
        return stage

    def _grow_partition(self, image: DiskImage, binding: LoopBinding) -> None:
        try:
            run_command(
                [
                    "parted",
                    "--script",
                    binding.device,
                    "resizepart",
                    str(ROOT_PARTITION),
                    "100%",
                ]
            )
        except CommandError as exc:
            raise ResizeError(image.path, "partition resize", exc.stderr or str(exc)) from exc

    def _check_filesystem(self, image: DiskImage, binding: LoopBinding) -> None:
        partition = binding.partition(ROOT_PARTITION)
        result = run_command(["e2fsck", "-f", "-p", partition], check=False)
        if result.returncode not in E2FSCK_OK_CODES:
            reason = (result.stderr or result.stdout or "").strip()
            raise ResizeError(
                image.path,
                "filesystem check",
                f"e2fsck exited with {result.returncode}: {reason}",
            )
        if result.returncode:
            log.warning(f"e2fsck repaired {partition} (exit code {result.returncode})")

    def _grow_filesystem(self, image: DiskImage, binding: LoopBinding) -> None:
        partition = binding.partition(ROOT_PARTITION)
        try:
            run_command(["resize2fs", partition])
        except CommandError as exc:
            raise ResizeError(image.path, "filesystem resize", exc.stderr or str(exc)) from exc
