"""Loop device binding for disk images.

Attaches an image to a free loop device with partition scanning so that the
boot and root partitions appear as ``<device>p1`` and ``<device>p2``. The
bound device is recorded in the installation's state store so that a later
process can release it.

Binding is idempotent: a device already recorded for this image, or any
device the kernel reports as backed by the image, is reused instead of
attaching a second one.
"""

from __future__ import annotations

import json
from pathlib import Path

from rpi_chroot.domain import DetachPolicy, DiskImage, LoopBinding
from rpi_chroot.logging import LoggerFactory
from rpi_chroot.storage.commands import run_command
from rpi_chroot.storage.exceptions import CommandError, LoopBindError
from rpi_chroot.storage.state import StateStore


log = LoggerFactory.for_loop()

DELETED_SUFFIX = " (deleted)"


def list_loop_devices() -> list[dict]:
    """Return attached loop devices as ``{"name", "back-file"}`` dicts."""
    result = run_command(
        ["losetup", "--list", "--json", "--output", "NAME,BACK-FILE"], check=False
    )
    if result.returncode != 0 or not result.stdout.strip():
        return []
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        log.warning("Unable to parse losetup output")
        return []
    return list(data.get("loopdevices", []))


def _backing_path(entry: dict) -> Path | None:
    back_file = entry.get("back-file")
    if not back_file:
        return None
    if back_file.endswith(DELETED_SUFFIX):
        back_file = back_file[: -len(DELETED_SUFFIX)]
    return Path(back_file)


def devices_for(image: Path) -> list[str]:
    """Loop devices currently backed by ``image``."""
    target = Path(image).resolve()
    devices = []
    for entry in list_loop_devices():
        backing = _backing_path(entry)
        if backing is not None and backing.resolve() == target:
            devices.append(entry["name"])
    return devices


def is_attached(device: str) -> bool:
    return any(entry.get("name") == device for entry in list_loop_devices())


class LoopBinder:
    """Bind and release the loop device of one installation."""

    def __init__(self, store: StateStore, policy: DetachPolicy = DetachPolicy.SCOPED):
        self.store = store
        self.policy = policy

    def current(self) -> LoopBinding | None:
        """The recorded binding, if any."""
        device = self.store.get_loop_device()
        if not device:
            return None
        return LoopBinding(device=device)

    def bind(self, image: DiskImage) -> LoopBinding:
        """Attach ``image`` to a loop device, reusing an existing binding.

        Raises:
            LoopBindError: losetup failed or returned no device
        """
        attached = devices_for(image.path)
        recorded = self.store.get_loop_device()
        if recorded and recorded in attached:
            log.debug(f"Reusing recorded loop device {recorded} for {image.name}")
            return LoopBinding(device=recorded, image=image.path)
        if recorded:
            log.warning(f"Recorded loop device {recorded} no longer backs {image.name}")
        if attached:
            device = attached[0]
            log.info(f"{image.name} already attached to {device}")
        else:
            try:
                result = run_command(
                    ["losetup", "--find", "--show", "--partscan", str(image.path)]
                )
            except CommandError as exc:
                raise LoopBindError(image.path, exc.stderr or str(exc)) from exc
            device = result.stdout.strip()
            if not device:
                raise LoopBindError(image.path, "losetup returned no device")
            log.info(f"Attached {image.name} to {device}")
        self.store.set_loop_device(device)
        return LoopBinding(device=device, image=image.path)

    def unbind(self, binding: LoopBinding) -> None:
        """Detach ``binding`` and clear the record."""
        if is_attached(binding.device):
            run_command(["losetup", "--detach", binding.device])
            log.info(f"Detached {binding.device}")
        else:
            log.debug(f"{binding.device} already detached")
        self.store.set_loop_device(None)

    def detach_fallback(self, image: Path | None) -> int:
        """Release loop devices when no binding is on record.

        With the scoped policy only devices backed by ``image`` are detached;
        the global policy detaches every loop device on the host.

        Returns:
            Exit status of the detach command(s), 0 when nothing was detached
        """
        if self.policy is DetachPolicy.GLOBAL:
            log.warning("Detaching every loop device on the system")
            status = run_command(["losetup", "--detach-all"], check=False).returncode
        else:
            status = 0
            devices = devices_for(image) if image is not None else []
            if not devices:
                log.info("No loop devices backed by this installation")
            for device in devices:
                log.info(f"Detaching {device}")
                result = run_command(["losetup", "--detach", device], check=False)
                if result.returncode != 0 and status == 0:
                    status = result.returncode
        self.store.set_loop_device(None)
        return status

    def release(self, image: Path | None) -> int:
        """Unbind the recorded device, or fall back to :meth:`detach_fallback`."""
        binding = self.current()
        if binding is None:
            log.warning("No loop device on record, falling back to detach")
            return self.detach_fallback(image)
        self.unbind(binding)
        return 0
