"""Domain model for chroot installations.

Type-safe objects for the installation, its disk image, the loop binding,
the mount tree and the persisted state record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping


DEFAULT_IMAGE_PATTERN = "*raspbian*.img"
DEFAULT_USER = "pi"
MOUNT_DIRNAME = "mnt"
STATE_FILENAME = ".rpi-chroot-state.json"
UTILITY_FILENAME = "chroot"


# ==============================================================================
# Installation Domain
# ==============================================================================


@dataclass(frozen=True)
class EnvRule:
    """Environment variable allow-list rule.

    Either an exact name ("ARCH") or a prefix wildcard ("LC_*").
    """

    name: str
    prefix: bool = False

    @classmethod
    def parse(cls, pattern: str) -> EnvRule:
        pattern = pattern.strip()
        if not pattern:
            raise ValueError("Empty environment pattern")
        if pattern.endswith("*"):
            stem = pattern[:-1]
            if not stem or "*" in stem:
                raise ValueError(f"Unsupported environment pattern: {pattern}")
            return cls(name=stem, prefix=True)
        if "*" in pattern:
            raise ValueError(f"Unsupported environment pattern: {pattern}")
        return cls(name=pattern)

    def matches(self, variable: str) -> bool:
        if self.prefix:
            return variable.startswith(self.name)
        return variable == self.name

    def __str__(self) -> str:
        return f"{self.name}*" if self.prefix else self.name


def parse_env_rules(patterns: str | Iterable[str]) -> tuple[EnvRule, ...]:
    """Parse a space-separated string or iterable of patterns into rules."""
    if isinstance(patterns, str):
        patterns = patterns.split()
    return tuple(EnvRule.parse(pattern) for pattern in patterns if pattern.strip())


def select_environment(
    rules: Iterable[EnvRule], environ: Mapping[str, str]
) -> dict[str, str]:
    """Return the subset of ``environ`` matched by any rule."""
    rules = tuple(rules)
    return {
        name: value
        for name, value in environ.items()
        if any(rule.matches(name) for rule in rules)
    }


@dataclass(frozen=True)
class ChrootInstallation:
    """A chroot installation, keyed by its root directory."""

    root: Path
    arch: str = "armhf"
    image_source: str | None = None
    packages: tuple[str, ...] = ()
    env_rules: tuple[EnvRule, ...] = ()
    add_size_mb: int = 0
    scratch_dir: Path | None = None
    image_pattern: str = DEFAULT_IMAGE_PATTERN
    user: str = DEFAULT_USER

    @property
    def mount_root(self) -> Path:
        """Guest root filesystem mount point (e.g., /srv/pi/mnt)."""
        return self.root / MOUNT_DIRNAME

    @property
    def state_path(self) -> Path:
        return self.root / STATE_FILENAME

    @property
    def utility_path(self) -> Path:
        return self.root / UTILITY_FILENAME

    def guest_path(self, path: str | Path) -> Path:
        """Map an absolute guest path to its host location under mnt."""
        return self.mount_root / str(path).lstrip("/")


# ==============================================================================
# Image Domain
# ==============================================================================


@dataclass(frozen=True)
class DiskImage:
    """A disk image file holding boot (1) and root (2) partitions."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    @property
    def size_bytes(self) -> int:
        """Current size in bytes, 0 if the file is missing."""
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0


@dataclass(frozen=True)
class LoopBinding:
    """A disk image attached to a kernel loop device."""

    device: str  # e.g., "/dev/loop3"
    image: Path | None = None

    def partition(self, number: int) -> str:
        """Partition sub-device node (e.g., /dev/loop3p2)."""
        return f"{self.device}p{number}"

    @property
    def boot_partition(self) -> str:
        return self.partition(1)

    @property
    def root_partition(self) -> str:
        return self.partition(2)


# ==============================================================================
# Mount Domain
# ==============================================================================


@dataclass(frozen=True)
class MountSpec:
    """A single mount step applied under the installation's mount root."""

    source: str
    target: Path
    fstype: str | None = None
    bind: bool = False
    recursive: bool = False
    private: bool = False
    options: tuple[str, ...] = ()

    def mount_command(self) -> list[str]:
        command = ["mount"]
        if self.bind:
            command.append("--rbind" if self.recursive else "--bind")
        if self.fstype:
            command.extend(["-t", self.fstype])
        if self.options:
            command.extend(["-o", ",".join(self.options)])
        command.extend([self.source, str(self.target)])
        return command

    def propagation_command(self) -> list[str] | None:
        if not self.private:
            return None
        flag = "--make-rprivate" if self.recursive else "--make-private"
        return ["mount", flag, str(self.target)]


@dataclass(frozen=True)
class MountTree:
    """Ordered mount steps; parents always precede their children."""

    specs: tuple[MountSpec, ...] = field(default_factory=tuple)

    def __iter__(self):
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    @property
    def targets(self) -> list[Path]:
        return [spec.target for spec in self.specs]


# ==============================================================================
# Resize / State Domain
# ==============================================================================


class ResizeStage(Enum):
    """Progress of a partition + filesystem growth."""

    UNRESIZED = "unresized"
    PARTITION_GROWN = "partition_grown"
    CHECKED = "checked"
    FILESYSTEM_GROWN = "filesystem_grown"

    @property
    def in_progress(self) -> bool:
        return self in (ResizeStage.PARTITION_GROWN, ResizeStage.CHECKED)


class DetachPolicy(Enum):
    """How to release loop devices when none is on record."""

    SCOPED = "scoped"  # only devices backed by this installation's image
    GLOBAL = "global"  # losetup --detach-all


@dataclass
class ChrootState:
    """Durable record for one installation."""

    root: str
    loop_device: str | None = None
    resize_stage: ResizeStage = ResizeStage.UNRESIZED
    # Image size a pending grow pads to; cleared once the grow completes.
    pad_target_bytes: int | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "root": self.root,
            "loop_device": self.loop_device,
            "resize_stage": self.resize_stage.value,
            "pad_target_bytes": self.pad_target_bytes,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], root: str) -> ChrootState:
        stage_value = data.get("resize_stage") or ResizeStage.UNRESIZED.value
        try:
            stage = ResizeStage(stage_value)
        except ValueError:
            stage = ResizeStage.UNRESIZED
        loop_device = data.get("loop_device") or None
        pad_target = data.get("pad_target_bytes")
        if not isinstance(pad_target, int) or pad_target <= 0:
            pad_target = None
        updated_at = data.get("updated_at")
        return cls(
            root=str(data.get("root") or root),
            loop_device=str(loop_device) if loop_device else None,
            resize_stage=stage,
            pad_target_bytes=pad_target,
            updated_at=str(updated_at) if updated_at else None,
        )
